import logging
import random
import threading
import time
from typing import Callable, Dict, List, Optional

from poisoner.config import Config
from poisoner.schemas import Participant, Phase
from .engine import ReconciliationEngine
from .errors import SyncError
from .phases import PhaseController
from .store import RecordStore

logger = logging.getLogger(__name__)


def _start_thread(target, *args):
    thread = threading.Thread(target=target, args=args, daemon=True)
    thread.start()
    return thread


class DebugControls:
    """Test controls for exercising a session by hand.

    Acknowledgment simulation launches one fire-and-forget task per
    participant, each sleeping an independent random delay before writing.
    """

    def __init__(self, store: RecordStore, engine: ReconciliationEngine, phases: PhaseController,
                 spawn: Optional[Callable] = None, sleep: Callable[[float], None] = time.sleep,
                 rng: Optional[random.Random] = None,
                 min_delay: float = Config.SIMULATE_ACK_MIN_SEC,
                 max_delay: float = Config.SIMULATE_ACK_MAX_SEC):
        self.store = store
        self.engine = engine
        self.phases = phases
        self.spawn = spawn or _start_thread
        self.sleep = sleep
        self.rng = rng or random.Random()
        self.min_delay = min_delay
        self.max_delay = max_delay

    def force_phase(self, phase: Phase):
        return self.phases.force(phase)

    def reset_all_acknowledgments(self) -> List[Participant]:
        logger.info(f"[debug] reset acknowledgments game={self.engine.game_id}")
        return self.store.update_participants_where(self.engine.game_id, acknowledged=False)

    def set_poisoner(self, participant_id: int, is_poisoner: bool) -> Participant:
        return self.store.update_participant(participant_id, is_poisoner=is_poisoner)

    def acknowledge_participant(self, participant_id: int) -> Participant:
        return self.store.update_participant(participant_id, acknowledged=True)

    def _unacknowledged(self) -> List[Participant]:
        return [p for p in self.engine.participants if not p.acknowledged]

    def simulate_one_acknowledgment(self) -> Optional[Participant]:
        pending = self._unacknowledged()
        if not pending:
            return None
        target = self.rng.choice(pending)
        logger.info(f"[debug] simulating acknowledgment for {target.name!r}")
        return self.acknowledge_participant(target.id)

    def simulate_acknowledgments(self) -> list:
        """Acknowledge every pending participant concurrently; returns the task handles."""
        pending = self._unacknowledged()
        tasks = []
        for participant in pending:
            delay = self.rng.uniform(self.min_delay, self.max_delay)
            tasks.append(self.spawn(self._acknowledge_later, participant, delay))
        logger.info(f"[debug] launched {len(tasks)} acknowledgment tasks game={self.engine.game_id}")
        return tasks

    def _acknowledge_later(self, participant: Participant, delay: float) -> None:
        self.sleep(delay)
        try:
            self.acknowledge_participant(participant.id)
        except SyncError as exc:
            logger.error(f"[debug] acknowledging {participant.name!r} failed: {exc}")

    def debug_info(self) -> Dict[str, object]:
        snapshot = self.engine.snapshot()
        return {
            'phase': snapshot.game.phase.value if snapshot.game else None,
            'player_count': len(snapshot.participants),
            'acknowledged': sum(1 for p in snapshot.participants if p.acknowledged),
            'poisoners': sum(1 for p in snapshot.participants if p.is_poisoner),
        }
