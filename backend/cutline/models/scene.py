"""Scene model."""
from dataclasses import dataclass


@dataclass(frozen=True)
class Scene:
    """A detected time range within a source video."""
    start: float
    end: float

    def __post_init__(self):
        if not self.start < self.end:
            raise ValueError(f"Scene start must be before end: {self.start} >= {self.end}")

    @property
    def duration(self) -> float:
        return self.end - self.start

    def overlaps(self, other: "Scene") -> bool:
        return self.start < other.end and other.start < self.end

    def to_dict(self) -> dict:
        return {"start": self.start, "end": self.end}

    @classmethod
    def from_dict(cls, data: dict) -> "Scene":
        return cls(start=float(data["start"]), end=float(data["end"]))

    def __repr__(self):
        return f"Scene({self.start:.2f}-{self.end:.2f}, dur={self.duration:.2f}s)"
