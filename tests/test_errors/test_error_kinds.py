from claw_market.exceptions import (
    ArchiveError,
    BlockedAddressError,
    CatalogValidationError,
    ConfigurationError,
    DnsResolutionError,
    ExtractionTimeoutError,
    ErrorKind,
    FetchTimeoutError,
    InstallerError,
    NetworkError,
    NotFoundError,
    UnsafeNameError,
    classify_error,
    http_status_for,
)
from claw_market.logging import SECURITY_EVENT, log_security_event


def test_classify_error_maps_each_family():
    assert classify_error(CatalogValidationError("bad")) is ErrorKind.VALIDATION
    assert classify_error(NetworkError("down", status_code=503)) is ErrorKind.NETWORK
    assert classify_error(DnsResolutionError("nowhere.example")) is ErrorKind.NETWORK
    assert classify_error(FetchTimeoutError("https://x.example", 1.5)) is ErrorKind.NETWORK
    assert classify_error(InstallerError("npm pack failed")) is ErrorKind.NETWORK
    assert classify_error(BlockedAddressError("http://10.0.0.5/", "private address")) is ErrorKind.SECURITY
    assert classify_error(UnsafeNameError("../x", "Invalid skill name")) is ErrorKind.SECURITY
    assert classify_error(ArchiveError("corrupt")) is ErrorKind.CONTENT
    assert classify_error(ExtractionTimeoutError(30)) is ErrorKind.CONTENT
    assert classify_error(NotFoundError("ghost")) is ErrorKind.NOT_FOUND
    assert classify_error(ConfigurationError("no catalog")) is ErrorKind.CONFIGURATION
    assert classify_error(RuntimeError("boom")) is ErrorKind.INTERNAL


def test_http_status_for_error_kinds():
    assert http_status_for(ErrorKind.VALIDATION) == 400
    assert http_status_for(ErrorKind.SECURITY) == 400
    assert http_status_for(ErrorKind.CONTENT) == 400
    assert http_status_for(ErrorKind.NOT_FOUND) == 404
    assert http_status_for(ErrorKind.NETWORK) == 502
    assert http_status_for(ErrorKind.CONFIGURATION) == 500


def test_error_messages_carry_context():
    timeout = FetchTimeoutError("https://cdn.example/a.tgz", 2)
    assert "timed out after 2s" in str(timeout)
    blocked = BlockedAddressError("http://10.0.0.5/", "private address", "10.0.0.5")
    assert blocked.address == "10.0.0.5"
    assert "Blocked request to http://10.0.0.5/" in str(blocked)
    assert str(NotFoundError("ghost")) == '"ghost" not found'


class _RecordingLogger:
    def __init__(self):
        self.calls: list[tuple[str, dict]] = []

    def warning(self, message: str, **fields) -> None:
        self.calls.append((message, fields))


def test_security_events_are_tagged():
    logger = _RecordingLogger()

    log_security_event(logger, "Rejected skill name", skill="../x")

    assert logger.calls == [
        ("Rejected skill name", {"event_type": SECURITY_EVENT, "skill": "../x"}),
    ]
