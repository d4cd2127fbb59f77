"""
Solution catalog package.

Holds the Solution/Grant/AccessEvent model, the access decision pipeline
and the usage tracker that maintains grant counters.

Modules of interest:
- models: Data classes for records plus API request/response models.
- validator: Short-circuit access decision over store data.
- tracker: Grant lifecycle, event log and usage counters.
- catalog: Administrator operations on Solution records.
"""
