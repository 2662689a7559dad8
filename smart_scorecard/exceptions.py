"""
Error taxonomy for the scorecard app.

Every error carries a human readable ``message`` and an optional ``detail``.
Route handlers raise; the handlers registered in ``main.py`` turn launch and
app failures into HTML diagnostics. ``$completeness`` never raises these to
the client, it answers with an OperationOutcome instead.
"""


class ScorecardAppError(Exception):
    """Base class for all application errors."""

    title = "Application Error"
    http_status = 500

    def __init__(self, message, detail=None):
        self.message = message
        self.detail = detail
        super().__init__(message)


class ConfigError(ScorecardAppError):
    """The issuer configuration file could not be read."""

    title = "Configuration Error"


class ProtocolInputError(ScorecardAppError):
    """Malformed $completeness input. Reported as a 422 OperationOutcome."""

    title = "Invalid Input"
    http_status = 422


class DiscoveryError(ScorecardAppError):
    """The issuer did not advertise SMART OAuth2 endpoints."""

    title = "Launch Discovery Failed"
    http_status = 502


class UpstreamExchangeError(ScorecardAppError):
    """The authorization server rejected or garbled the token exchange."""

    title = "Token Exchange Failed"
    http_status = 502


class UpstreamFetchError(ScorecardAppError):
    """A Patient, Condition or MedicationOrder read/search failed."""

    title = "FHIR Fetch Failed"
    http_status = 502


class StateMismatchError(ScorecardAppError):
    """The OAuth2 ``state`` did not match the one stored at launch."""

    title = "Invalid Launch State!"
    http_status = 200
