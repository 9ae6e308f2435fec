"""
Discharge export pipeline services

- PatientIdentityResolver: source patient -> destination Patient mapping
- DuplicateDetector: fingerprint lookup of exports already written
- DestinationFHIRWriter: Binary, DocumentReference and Composition writes
- EventPublisher: terminal DocumentExportEvent notification
- ExportOrchestrator: per-job state machine
- ExportRunner: concurrent batches and the polling sweep
- DocumentRetrievalService: exported content lookup
"""
