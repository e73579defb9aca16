"""Ephemeral description of one media tool call."""
import asyncio
import enum
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional


class ToolCommand(str, enum.Enum):
    """Kind of tool invocation."""
    PROBE = "probe"
    TRIM = "trim"
    SCENE_DETECT = "scene-detect"


@dataclass
class ToolInvocation:
    """One call into the media tool adapter. Never persisted."""
    command: ToolCommand
    inputs: List[Path]
    output: Optional[Path] = None
    params: Dict[str, Any] = field(default_factory=dict)
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    timeout: Optional[float] = None

    @property
    def cancel_requested(self) -> bool:
        return self.cancel_event.is_set()

    def describe(self) -> str:
        names = ", ".join(p.name for p in self.inputs)
        return f"{self.command.value}({names})"
