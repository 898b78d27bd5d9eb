"""Unit tests for auth metric emission."""

import io

import pytest

from gworkspace_auth.auth.metrics import AuthMetrics, sanitize_value


@pytest.fixture
def stream() -> io.StringIO:
    return io.StringIO()


@pytest.mark.unit
class TestAuthMetrics:
    """Tests for AuthMetrics line output."""

    def test_should_emit_refresh_success(self, stream: io.StringIO) -> None:
        """Verify refresh success lines and omission of unset fields."""
        AuthMetrics(enabled=True, stream=stream).emit_refresh_success(412, type="proactive")
        expected = "AUTH_METRIC event=refresh_success duration=412 type=proactive\n"
        assert stream.getvalue() == expected

    def test_should_emit_refresh_failure(self, stream: io.StringIO) -> None:
        """Verify failure lines sanitize the error text."""
        AuthMetrics(enabled=True, stream=stream).emit_refresh_failure(
            "invalid grant!", 30, type="reactive", retry_count=0
        )
        assert stream.getvalue() == (
            "AUTH_METRIC event=refresh_failure error=invalid_grant duration=30 "
            "type=reactive retryCount=0\n"
        )

    def test_should_emit_proactive_trigger(self, stream: io.StringIO) -> None:
        """Verify proactive refresh lines carry expiry and threshold."""
        AuthMetrics(enabled=True, stream=stream).emit_refresh_proactive(120000, threshold=300000)
        assert stream.getvalue() == (
            "AUTH_METRIC event=refresh_proactive timeUntilExpiry=120000 threshold=300000\n"
        )

    def test_should_emit_cache_corruption(self, stream: io.StringIO) -> None:
        """Verify corruption lines lowercase the type and render booleans."""
        AuthMetrics(enabled=True, stream=stream).emit_cache_corrupted(
            "keyring", "JSON_CORRUPTION", recoverable=False, error_type="JSONDecodeError"
        )
        assert stream.getvalue() == (
            "AUTH_METRIC event=cache_corrupted source=keyring corruptionType=json_corruption "
            "recoverable=false errorType=JSONDecodeError\n"
        )

    def test_should_write_nothing_when_disabled(self, stream: io.StringIO) -> None:
        """Verify disabled emitters are silent."""
        metrics = AuthMetrics(enabled=False, stream=stream)
        metrics.emit_refresh_success(1)
        metrics.emit_cache_corrupted("file", "ENCRYPTION_CORRUPTION")
        assert stream.getvalue() == ""

    @pytest.mark.parametrize("setting", ["off", "false", "0", "OFF"])
    def test_should_read_disable_switch_from_environment(
        self, monkeypatch: pytest.MonkeyPatch, setting: str
    ) -> None:
        """Verify AUTH_METRICS disables emission."""
        monkeypatch.setenv("AUTH_METRICS", setting)
        assert AuthMetrics().enabled is False

    def test_should_default_to_enabled(self) -> None:
        """Verify emission is on without configuration."""
        assert AuthMetrics().enabled is True

    def test_should_survive_closed_stream(self) -> None:
        """Verify a closed stream does not raise."""
        stream = io.StringIO()
        stream.close()
        AuthMetrics(enabled=True, stream=stream).emit_refresh_success(5)


@pytest.mark.unit
class TestSanitizeValue:
    """Tests for sanitize_value()."""

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("keyring", "keyring"),
            ("a  b//c", "a_b_c"),
            ("  padded ", "padded"),
            ("v1.2-beta", "v1.2-beta"),
            ("", ""),
        ],
    )
    def test_should_restrict_characters(self, raw: str, expected: str) -> None:
        """Verify unsafe characters collapse to single underscores."""
        assert sanitize_value(raw) == expected
