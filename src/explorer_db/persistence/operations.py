"""Operation descriptors: statements plus bound parameters, expressed as values."""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Literal, TypeAlias

from explorer_db.constants import STATEMENT_LOG_PREVIEW_CHARS
from explorer_db.errors import CallerError
from explorer_db.persistence.retry import ErrorClassifier

SQLValue: TypeAlias = str | int | float | bytes | None
SQLParams: TypeAlias = Sequence[SQLValue] | Mapping[str, SQLValue]
OperationKind: TypeAlias = Literal["query", "run", "run_many"]

_FrozenParams: TypeAlias = tuple[SQLValue, ...] | tuple[tuple[str, SQLValue], ...]

OPERATION_KINDS: tuple[OperationKind, ...] = ("query", "run", "run_many")


@dataclass(frozen=True, slots=True)
class Operation:
    """Immutable unit of work submitted to the query facade.

    Retrying an ``Operation`` replays exactly the described statement with the
    same bound parameters; nothing accumulates between attempts.
    """

    statement: str
    params: _FrozenParams | tuple[_FrozenParams, ...] = ()
    kind: OperationKind = "query"
    named: bool = False
    classifier: ErrorClassifier | None = field(default=None, compare=False)
    label: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.statement, str) or not self.statement.strip():
            raise CallerError("statement must be a non-empty string")
        if self.kind not in OPERATION_KINDS:
            raise CallerError(f"unsupported operation kind {self.kind!r}")

    @classmethod
    def query(
        cls,
        statement: str,
        params: SQLParams = (),
        *,
        classifier: ErrorClassifier | None = None,
        label: str | None = None,
    ) -> Operation:
        frozen, named = _freeze_params(params)
        return cls(statement, frozen, "query", named, classifier, label)

    @classmethod
    def run(
        cls,
        statement: str,
        params: SQLParams = (),
        *,
        classifier: ErrorClassifier | None = None,
        label: str | None = None,
    ) -> Operation:
        frozen, named = _freeze_params(params)
        return cls(statement, frozen, "run", named, classifier, label)

    @classmethod
    def run_many(
        cls,
        statement: str,
        params_seq: Iterable[SQLParams],
        *,
        classifier: ErrorClassifier | None = None,
        label: str | None = None,
    ) -> Operation:
        if isinstance(params_seq, (str, bytes, Mapping)):
            raise CallerError("run_many expects an iterable of parameter sets")
        frozen_rows: list[_FrozenParams] = []
        named_flags: set[bool] = set()
        for row in params_seq:
            frozen, named = _freeze_params(row)
            frozen_rows.append(frozen)
            named_flags.add(named)
        if len(named_flags) > 1:
            raise CallerError("run_many parameter sets must all be positional or all be named")
        named = named_flags.pop() if named_flags else False
        return cls(statement, tuple(frozen_rows), "run_many", named, classifier, label)

    @property
    def preview(self) -> str:
        """Whitespace-collapsed statement, truncated for log output."""

        collapsed = " ".join(self.statement.split())
        if len(collapsed) <= STATEMENT_LOG_PREVIEW_CHARS:
            return collapsed
        return collapsed[:STATEMENT_LOG_PREVIEW_CHARS] + "..."

    @property
    def display_label(self) -> str:
        return self.label if self.label is not None else f"{self.kind}: {self.preview}"

    def bound(self) -> tuple[SQLValue, ...] | dict[str, SQLValue]:
        """Parameters in the shape ``sqlite3`` expects for a single statement."""

        if self.kind == "run_many":
            raise CallerError("run_many operations bind per row; use bound_rows()")
        return _thaw(self.params, self.named)

    def bound_rows(self) -> list[tuple[SQLValue, ...] | dict[str, SQLValue]]:
        if self.kind != "run_many":
            raise CallerError("bound_rows() is only valid for run_many operations")
        return [_thaw(row, self.named) for row in self.params]


def _freeze_params(params: SQLParams | None) -> tuple[_FrozenParams, bool]:
    if params is None:
        return (), False
    if isinstance(params, Mapping):
        items: list[tuple[str, SQLValue]] = []
        for key, value in params.items():
            if not isinstance(key, str):
                raise CallerError(f"named parameter keys must be strings, got {type(key).__name__}")
            items.append((key, value))
        return tuple(items), True
    if isinstance(params, (str, bytes)):
        raise CallerError("params must be a sequence or mapping, not a bare string")
    if not isinstance(params, Sequence):
        raise CallerError(f"params must be a sequence or mapping, got {type(params).__name__}")
    return tuple(params), False


def _thaw(params: object, named: bool) -> tuple[SQLValue, ...] | dict[str, SQLValue]:
    if named:
        return dict(params)  # type: ignore[arg-type]
    return tuple(params)  # type: ignore[arg-type]


__all__ = [
    "OPERATION_KINDS",
    "Operation",
    "OperationKind",
    "SQLParams",
    "SQLValue",
]
