"""Unit tests for the export error taxonomy."""

from discharge_export.core import errors
from discharge_export.core.errors import (
    DestinationWriteFailed,
    ExportError,
    PublishUnavailable,
    SourceNotFound,
    SourceUnavailable,
)


def test_kinds_are_unique_and_match_class_names():
    classes = [getattr(errors, name) for name in errors.__all__]
    kinds = [cls.kind for cls in classes]

    assert len(kinds) == len(set(kinds))
    for cls in classes:
        assert cls.kind == cls.__name__
        assert issubclass(cls, ExportError)


def test_default_transience():
    assert SourceUnavailable("x").transient is True
    assert PublishUnavailable("x").transient is True
    assert SourceNotFound("x").transient is False
    assert DestinationWriteFailed("x").transient is False


def test_transient_can_be_overridden_per_instance():
    assert SourceUnavailable("bad key", transient=False).transient is False
    assert DestinationWriteFailed("503", transient=True).transient is True
    # Class default untouched
    assert DestinationWriteFailed.transient is False


def test_describe_includes_kind_and_step():
    error = SourceNotFound("DocumentReference/doc-1 not found", step="fetching")

    assert error.describe() == "SourceNotFound: DocumentReference/doc-1 not found (step: fetching)"
    assert str(error) == "DocumentReference/doc-1 not found"


def test_describe_without_step():
    assert ExportError("boom").describe() == "ExportError: boom"
