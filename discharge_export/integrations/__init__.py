"""
Integrations - External System Connectors

Provides adapters for external clinical systems:
- FHIR R4 client for the destination store
- Source EHR adapter for Cerner and Epic
"""
