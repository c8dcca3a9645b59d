from dataclasses import dataclass
from typing import Optional, Tuple


@dataclass
class Detection:
    """
    One detected object in original image pixel coordinates.
    """

    x1: float
    y1: float
    x2: float
    y2: float
    score: float
    class_id: int
    label: Optional[str] = None

    def as_xyxy(self) -> Tuple[float, float, float, float]:
        return self.x1, self.y1, self.x2, self.y2

    @property
    def width(self) -> float:
        return self.x2 - self.x1

    @property
    def height(self) -> float:
        return self.y2 - self.y1
