"""
Values threaded through the pipeline loop: run state, fetch results and
natural keys.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Mapping, Optional
import enum


class PipelineState(str, enum.Enum):
    """Driver state machine"""
    INIT = "init"
    FETCHING = "fetching"
    FILTERING = "filtering"
    TRANSFORMING = "transforming"
    WRITING = "writing"
    CHECKPOINTING = "checkpointing"
    PACING = "pacing"
    DONE = "done"
    FAILED = "failed"


class NaturalKey(Mapping):
    """
    Immutable column -> value mapping identifying an entity at its source.

    Two keys are equal when they hold the same columns with the same values,
    regardless of the order they were given in, so a key can be used as a
    dict key to map written entities to their local ids.

    Example:
        NaturalKey(source_name="goat", external_id="123", sku="AB-1")
        NaturalKey(tracking_code="LP0012345")
    """

    __slots__ = ("_fields", "_hash")

    def __init__(self, fields: Optional[Mapping[str, Any]] = None, **kwargs: Any):
        data = dict(fields or {})
        data.update(kwargs)
        if not data:
            raise ValueError("NaturalKey needs at least one column")
        self._fields = data
        self._hash = hash(frozenset(data.items()))

    def __getitem__(self, key: str) -> Any:
        return self._fields[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._fields)

    def __len__(self) -> int:
        return len(self._fields)

    def __hash__(self) -> int:
        return self._hash

    def __eq__(self, other: object) -> bool:
        if isinstance(other, NaturalKey):
            return self._fields == other._fields
        return NotImplemented

    def __repr__(self) -> str:
        cols = ", ".join(f"{k}={v!r}" for k, v in self._fields.items())
        return f"NaturalKey({cols})"

    def subset(self, *columns: str) -> "NaturalKey":
        """Key restricted to the given columns (e.g. product key without sku)."""
        return NaturalKey({c: self._fields[c] for c in columns})

    def as_dict(self) -> Dict[str, Any]:
        return dict(self._fields)


@dataclass
class RunState:
    """
    Mutable state of one run.

    cursor is the position of the next batch to fetch; it only advances
    after the batch it covers has committed. resumed is True once the loop
    has been re-entered after a retryable failure (or a restart that found
    a retry marker), which lets sources skip one-time setup they already did.
    """
    cursor: int = 0
    retry_count: int = 0
    has_more: bool = True
    resumed: bool = False
    phase: PipelineState = PipelineState.INIT


@dataclass
class FetchResult:
    """One page/batch from a source adapter."""
    records: List[Any]
    has_more: bool
    next_cursor: int
    rejected: List[str] = field(default_factory=list)
