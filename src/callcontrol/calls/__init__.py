"""
Calls package: admission, metering and lifecycle reconciliation.
"""
