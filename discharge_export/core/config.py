"""
Application configuration
"""

from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings"""

    # Application
    APP_NAME: str = "Discharge Export Service"
    APP_VERSION: str = "0.1.0"
    # Debug switches logging to the console renderer; keep False in production
    DEBUG: bool = False
    ENVIRONMENT: str = "production"

    # Source EHR (Cerner/Epic FHIR R4)
    SOURCE_VENDOR: str = "cerner"  # "cerner" or "epic"
    SOURCE_FHIR_BASE_URL: str = "http://localhost:8081/fhir/r4"
    SOURCE_AUTH_MODE: str = "client_credentials"  # "none", "client_credentials", "jwt_assertion"
    SOURCE_TOKEN_URL: Optional[str] = None
    SOURCE_CLIENT_ID: Optional[str] = None
    # IMPORTANT: credentials below must never be logged
    SOURCE_CLIENT_SECRET: Optional[str] = None
    SOURCE_PRIVATE_KEY_PATH: Optional[str] = None
    SOURCE_PRIVATE_KEY_PEM: Optional[str] = None
    SOURCE_SCOPE: str = "system/Patient.read system/DocumentReference.read system/Binary.read"
    SOURCE_TOKEN_REFRESH_BUFFER_SECONDS: int = 60
    SOURCE_PATIENT_IDENTIFIER_SYSTEM: str = "urn:oid:2.16.840.1.113883.3.787.0.0"
    # Discharge document type filter used by the polling sweep (system|code)
    SOURCE_DISCHARGE_DOCUMENT_TYPE: str = "http://loinc.org|18842-5"
    SOURCE_SWEEP_PAGE_SIZE: int = 5

    # Destination FHIR store
    DESTINATION_FHIR_BASE_URL: str = "http://localhost:8082/fhir/r4"
    DESTINATION_ACCESS_TOKEN: Optional[str] = None

    # Tags and identifier systems written onto destination resources
    FHIR_TAG_SYSTEM: str = "urn:discharge-export:fhir:tags"
    SOURCE_DOCUMENT_IDENTIFIER_SYSTEM: str = "urn:discharge-export:source-document"
    EXPORT_FINGERPRINT_SYSTEM: str = "urn:discharge-export:fingerprint"

    # Redis (mapping store and event transport)
    REDIS_HOST: str = "redis"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: Optional[str] = None
    REDIS_SOCKET_TIMEOUT_SECONDS: float = 5.0

    @property
    def REDIS_URL(self) -> str:
        auth = f":{self.REDIS_PASSWORD}@" if self.REDIS_PASSWORD else ""
        return f"redis://{auth}{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    PATIENT_MAPPING_KEY_PREFIX: str = "patient_mapping"
    EXPORT_COMMIT_KEY_PREFIX: str = "export_commit"

    # Event publishing
    EXPORT_EVENTS_CHANNEL: str = "discharge-export-events"
    PUBLISH_TIMEOUT_SECONDS: float = 10.0

    # External call bounds
    FHIR_TIMEOUT_SECONDS: int = 30
    RETRY_MAX_ATTEMPTS: int = 3
    RETRY_BASE_DELAY_SECONDS: float = 0.5
    RETRY_MAX_DELAY_SECONDS: float = 10.0

    # Batch processing
    EXPORT_MAX_CONCURRENCY: int = 8

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")


# Global settings instance
settings = Settings()
