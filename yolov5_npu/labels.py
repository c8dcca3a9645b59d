from __future__ import annotations

from pathlib import Path
from typing import Dict, Iterable, Iterator, Tuple, Union

from .errors import InvalidClassId


PathLike = Union[str, Path]


class LabelTable:
    """
    Immutable ordered list of class names. The class id is the position in the list.
    """

    __slots__ = ("_names",)

    def __init__(self, names: Iterable[str]):
        self._names: Tuple[str, ...] = tuple(str(n) for n in names)

    def __len__(self) -> int:
        return len(self._names)

    def __iter__(self) -> Iterator[str]:
        return iter(self._names)

    def __repr__(self) -> str:
        return f"LabelTable({len(self._names)} classes)"

    def contains(self, class_id: int) -> bool:
        return 0 <= int(class_id) < len(self._names)

    def name(self, class_id: int) -> str:
        if not self.contains(class_id):
            raise InvalidClassId(f"class id {class_id} out of range for {len(self._names)} labels")
        return self._names[int(class_id)]

    def as_dict(self) -> Dict[int, str]:
        return dict(enumerate(self._names))


def load_label_table(path: PathLike) -> LabelTable:
    """
    Load class names from a plain text file, one name per line.

        person
        bicycle
        car
        ...

    Line order defines the class id. Blank lines at the end of the file are ignored,
    blank lines in the middle are kept so ids never shift.
    """

    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Label list not found: {p}")

    with open(p, "r", encoding="utf-8") as f:
        names = [raw.rstrip() for raw in f]

    while names and not names[-1]:
        names.pop()
    if not names:
        raise ValueError(f"Label list is empty: {p}")

    return LabelTable(names)
