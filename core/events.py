"""
levelbounce Core: Engine Events

Lifecycle states and the observer interface the Engine notifies. Listeners
subclass EngineListener and override only the events they care about.
"""

from enum import Enum

from core.models import LevelAnalysis, Position, TradeResult


class EngineState(Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


class EngineListener:
    """No-op base; each method corresponds to one engine event."""

    def on_started(self) -> None:
        pass

    def on_stopped(self) -> None:
        pass

    def on_error(self, error: Exception) -> None:
        pass

    def on_position_opened(self, position: Position) -> None:
        pass

    def on_position_closed(self, result: TradeResult) -> None:
        pass

    def on_level_update(self, levels: LevelAnalysis) -> None:
        pass

    def on_stop_loss_updated(self, new_stop: float) -> None:
        pass
