"""Domain-specific exceptions for the call pipeline.

These exceptions are safe to import from API layers without pulling in provider SDKs.
"""

from __future__ import annotations

# WebSocket close code used when a call cannot be served (RFC 6455 policy violation).
CLOSE_CODE_NOT_CONFIGURED = 1008


class PipelineError(Exception):
    status_code: int = 500
    close_code: int = 1011
    default_detail: str = "Pipeline error"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.default_detail)
        self.detail = detail or self.default_detail


class ConfigurationNotFoundError(PipelineError):
    status_code = 404
    close_code = CLOSE_CODE_NOT_CONFIGURED
    default_detail = "No active call configuration found."


class DuplicateConfigurationError(PipelineError):
    status_code = 409
    default_detail = "A call configuration with this id already exists."


class GenerationFailedError(PipelineError):
    status_code = 503
    default_detail = "Language model request failed."


class SynthesisFailedError(PipelineError):
    status_code = 503
    default_detail = "Speech synthesis failed."


class ProtocolViolationError(PipelineError):
    status_code = 400
    default_detail = "Malformed or out-of-order stream message."
