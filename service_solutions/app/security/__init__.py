"""
Content security package.

Sanitizers and validators applied to user-supplied HTML, text, embed URLs,
uploads, emails, phone numbers and slugs before they are stored or
rendered. Everything here is side-effect free.
"""
