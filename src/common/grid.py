from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Union

from .errors import ResolverError, ScanError
from .graph import CellValue


class Keep:
    """Patch cell that leaves the target cell untouched (sent as JSON null)."""

    __slots__ = ()

    def __repr__(self) -> str:
        return "KEEP"


KEEP = Keep()


@dataclass(frozen=True)
class Replace:
    """Patch cell carrying a resolved placeholder value."""

    value: str
    source: str


PatchCell = Union[Keep, Replace]


@dataclass
class SparsePatch:
    """
    Grid of the same shape as the scanned range where only resolved cells mutate.

    The workbook range PATCH treats null as "leave unchanged", so every
    non-placeholder cell is serialized as null and concurrent edits to other
    cells survive.
    """

    cells: List[List[PatchCell]]

    @property
    def replacements(self) -> int:
        return sum(1 for row in self.cells for c in row if isinstance(c, Replace))

    @property
    def is_empty(self) -> bool:
        return self.replacements == 0

    def to_payload(self) -> List[List[Optional[str]]]:
        return [[c.value if isinstance(c, Replace) else None for c in row] for row in self.cells]


def is_placeholder(value: CellValue, prefix: str) -> bool:
    return isinstance(value, str) and value.startswith(prefix)


def build_patch(
    values: Sequence[Sequence[CellValue]],
    prefix: str,
    resolve: Callable[[str], str],
) -> SparsePatch:
    """Scan row-major; resolve placeholder cells and mark all others KEEP.

    A resolver failure aborts the whole scan with ScanError so no partial
    patch is ever produced.
    """
    rows: List[List[PatchCell]] = []
    for r, row in enumerate(values):
        out: List[PatchCell] = []
        for c, value in enumerate(row):
            if not is_placeholder(value, prefix):
                out.append(KEEP)
                continue
            try:
                resolved = resolve(value)  # type: ignore[arg-type]
            except ResolverError as exc:
                raise ScanError(f"Placeholder at row {r}, column {c} failed: {exc}") from exc
            out.append(Replace(value=resolved, source=value))  # type: ignore[arg-type]
        rows.append(out)
    return SparsePatch(cells=rows)


__all__ = ["KEEP", "Keep", "Replace", "PatchCell", "SparsePatch", "build_patch", "is_placeholder"]
