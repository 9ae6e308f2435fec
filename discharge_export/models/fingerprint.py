"""Stable export fingerprint used to recognize documents already exported."""

import hashlib


def export_fingerprint(tenant_id: str, destination_patient_id: str, source_document_id: str) -> str:
    """
    Content-addressable key for (tenant, destination patient, source document).

    Written as an identifier on the destination DocumentReference and matched
    by the duplicate detector. Components are length-prefixed so that no two
    distinct triples share a digest input.
    """
    parts = (tenant_id, destination_patient_id, source_document_id)
    material = "|".join(f"{len(p)}:{p}" for p in parts)
    return hashlib.sha256(material.encode("utf-8")).hexdigest()
