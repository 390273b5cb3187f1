"""Unit tests for errors.py - the failure taxonomy."""

import pytest

from errors import (
    InvalidSpec,
    InvalidStoreConfig,
    KeyNotFound,
    MalformedPayload,
    PropertyNotFound,
    ProviderTimeout,
    ReconcileAbandoned,
    SecretSyncError,
    StoreNotFound,
    TemplateRenderError,
    Unauthorized,
    Unavailable,
    WriteConflict,
    error_kind,
    is_transient,
)


class TestStoreNotFound:
    """Tests for StoreNotFound."""

    def test_carries_requested_name(self):
        """Test the requested name is kept verbatim."""
        err = StoreNotFound("Vault-Store_01")
        assert err.name == "Vault-Store_01"
        assert err.namespace is None
        assert "'Vault-Store_01'" in err.message

    def test_message_includes_namespace(self):
        """Test the namespace appears in the message when given."""
        err = StoreNotFound("vault", "team-a")
        assert err.namespace == "team-a"
        assert str(err) == "secret store 'vault' not found in namespace 'team-a'"


class TestClassification:
    """Tests for transient/permanent classification."""

    @pytest.mark.parametrize(
        "error",
        [
            Unavailable("connection refused"),
            ProviderTimeout("slow"),
            WriteConflict("busy"),
        ],
    )
    def test_transient_errors(self, error):
        """Test backend outages, timeouts and write conflicts are transient."""
        assert is_transient(error) is True

    @pytest.mark.parametrize(
        "error",
        [
            StoreNotFound("missing"),
            InvalidStoreConfig("two providers"),
            InvalidSpec("bad"),
            KeyNotFound("k1"),
            PropertyNotFound("a.b"),
            MalformedPayload("not json"),
            Unauthorized("denied"),
            TemplateRenderError("unknown key"),
        ],
    )
    def test_permanent_errors(self, error):
        """Test configuration and data errors are permanent."""
        assert is_transient(error) is False

    def test_unexpected_exception_is_transient(self):
        """Test exceptions outside the taxonomy are retried with backoff."""
        assert is_transient(RuntimeError("boom")) is True

    def test_error_kind(self):
        """Test kinds come from the taxonomy, falling back to the class name."""
        assert error_kind(ProviderTimeout("slow")) == "Timeout"
        assert error_kind(KeyNotFound("k")) == "KeyNotFound"
        assert error_kind(ValueError("x")) == "ValueError"


class TestErrorDetails:
    """Tests for error attributes and messages."""

    def test_key_not_found_with_version(self):
        """Test the version is part of the message."""
        err = KeyNotFound("db/creds", "3")
        assert err.key == "db/creds"
        assert err.version == "3"
        assert err.message == "key 'db/creds' (version 3) not found"

    def test_property_not_found(self):
        """Test the property path and key are kept."""
        err = PropertyNotFound("a.b", key="k1")
        assert err.property == "a.b"
        assert err.key == "k1"
        assert "in key 'k1'" in err.message

    def test_all_taxonomy_errors_share_base(self):
        """Test every taxonomy error derives from SecretSyncError."""
        assert isinstance(WriteConflict("x"), SecretSyncError)
        assert isinstance(Unauthorized("x"), SecretSyncError)

    def test_abandoned_is_not_a_failure(self):
        """Test ReconcileAbandoned sits outside the failure taxonomy."""
        err = ReconcileAbandoned("superseded")
        assert not isinstance(err, SecretSyncError)
        assert err.message == "superseded"
