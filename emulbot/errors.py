"""Error taxonomy shared by the agent, tools and store."""


class EmulBotError(Exception):
    """Base class for all emulbot errors."""


class TransportError(EmulBotError):
    """Network or upstream service unavailable. The only retryable kind."""


class ValidationError(EmulBotError):
    """Malformed command or tool argument. Reported to the requester, never retried."""


class PermissionDeniedError(EmulBotError):
    """A non-admin attempted a privileged command."""


class StoreError(EmulBotError):
    """Durable write failed; the in-memory view was left unchanged."""


class OrchestrationLimitError(EmulBotError):
    """The round-trip ceiling was reached without a final reply."""

    def __init__(self, rounds: int):
        super().__init__(f"No final reply after {rounds} rounds")
        self.rounds = rounds
