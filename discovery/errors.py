"""Error taxonomy of the discovery engine."""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from discovery.models import Document


class DiscoveryError(Exception):
    """Base class for every error raised by the engine."""


class ConfigError(DiscoveryError):
    """Raised for invalid configuration values."""


class SerializationError(DiscoveryError):
    """Failed to serialize the internal state of the engine."""


class DeserializationError(DiscoveryError):
    """Failed to deserialize the internal state to create the engine."""


class NoStackOpsError(DiscoveryError):
    """The engine was constructed without any stack operations."""

    def __init__(self) -> None:
        super().__init__("No operations on stack were provided")


class InvalidStackError(DiscoveryError):
    """A stack could not be created from its data and operations."""


class InvalidStackIdError(DiscoveryError):
    """An event referenced a stack the engine does not know."""

    def __init__(self, stack_id: str) -> None:
        super().__init__(f"Invalid stack id: {stack_id}")
        self.stack_id = stack_id


class StackOpError(DiscoveryError):
    """A fetch, filter, merge or rank step failed for one stack."""

    def __init__(self, stack_id: str, message: str) -> None:
        super().__init__(f"Operation on stack {stack_id} failed: {message}")
        self.stack_id = stack_id


class SelectionError(DiscoveryError):
    """Selecting feed documents from the stacks failed."""


class RankerError(DiscoveryError):
    """Scoring or embedding documents failed."""


class EmbeddingError(RankerError):
    """The embedding provider could not embed a text."""


class NotEnoughInteractionsError(RankerError):
    """Scoring needs at least one positive center of interest."""

    def __init__(self) -> None:
        super().__init__("No positive centers of interest to score against")


class CoiError(RankerError):
    """Invalid update of a center of interest."""


class DocumentError(DiscoveryError):
    """A document could not be constructed or looked up."""


class ProviderError(DiscoveryError):
    """Fetching articles from a content source failed."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AggregateError(DiscoveryError):
    """Errors collected from independent per-stack operations.

    `partial` carries whatever result the operation still produced, e.g. the
    documents drawn for a feed batch whose follow-up update cycle failed.
    """

    def __init__(
        self,
        errors: Sequence[DiscoveryError],
        partial: list[Document] | None = None,
    ) -> None:
        self.errors = list(errors)
        self.partial = partial
        super().__init__(
            f"{len(self.errors)} error(s): "
            + "; ".join(str(err) for err in self.errors)
        )
