"""
Error taxonomy for the context window manager.

- ProviderError: the LLM provider failed or returned unusable output.
  Always recovered by a strategy's deterministic fallback.
- PersistenceError: the snapshot store failed. Logged; work continues in memory.
- ContextValidationError: bad caller input (import payload, role, budget).
- UnknownStrategyError: a strategy name that is not registered.
- ConfigurationError: invalid settings.
- EncryptionError: field encryption or decryption failed.
"""


class ContextLatticeError(Exception):
    """Base class for all context_lattice errors."""


class ProviderError(ContextLatticeError):
    """LLM provider unreachable, timed out, or returned malformed output."""


class PersistenceError(ContextLatticeError):
    """Snapshot store read/write failure."""


class ContextValidationError(ContextLatticeError, ValueError):
    """Caller supplied invalid data."""


class UnknownStrategyError(ContextLatticeError, ValueError):
    """Requested compression strategy is not registered."""

    def __init__(self, name):
        self.name = name
        super().__init__(f"Unknown compression strategy: {name}")


class ConfigurationError(ContextLatticeError):
    """Invalid configuration value."""


class EncryptionError(ContextLatticeError):
    """A stored field could not be encrypted or decrypted."""
