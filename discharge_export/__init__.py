"""
Discharge Export Service

Exports discharge documents from a source EHR into a destination FHIR store.
"""

__version__ = "0.1.0"
