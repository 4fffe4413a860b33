class QuoteCallError(Exception):
    """Base class for errors raised inside the call service."""


class StoreUnavailable(QuoteCallError):
    """The call state backend failed or a lock could not be obtained in time."""


class LockTimeout(StoreUnavailable):
    """Another handler is holding the per-call lock."""


class LLMProviderError(QuoteCallError):
    """The LLM provider returned an error or is being skipped by the circuit breaker."""


class LLMTimeout(LLMProviderError):
    pass


class MalformedLLMOutput(LLMProviderError):
    """The provider answered, but not with the JSON shape we asked for."""


class ContextNotFound(QuoteCallError):
    """No quote request / supplier context exists for a call id."""


class CollaboratorError(QuoteCallError):
    """A catalog or notification write did not go through after retrying."""
