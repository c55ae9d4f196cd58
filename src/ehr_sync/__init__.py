"""
EHR Sync: acquisition and reconciliation of external EHR data

Pulls clinical records from an external EHR over FHIR (bulk $export, group
search or single-patient search) and merges them into the local clinical
store exactly once.
"""

__version__ = "0.1.0"
