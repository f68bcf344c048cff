from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Tuple, Union
from collections import defaultdict, deque
import threading
import time

from dpgo_common.geometry import PoseDict
from dpgo_common.models import AgentStatus, PoseID


@dataclass
class PoseMessage:
    """Public poses one robot shares with a peer.

    ``auxiliary`` marks the accelerated (look-ahead) poses used only when
    acceleration is enabled.
    """

    sender: int
    receiver: int
    poses: PoseDict
    iteration: int
    auxiliary: bool = False
    sent_wall_time: float = field(default_factory=time.time)


@dataclass
class StatusMessage:
    sender: int
    receiver: int
    status: AgentStatus
    sent_wall_time: float = field(default_factory=time.time)


@dataclass
class WeightMessage:
    """Weights of shared loop closures decided by the lower-id endpoint robot."""

    sender: int
    receiver: int
    weights: Dict[Tuple[PoseID, PoseID], float]
    sent_wall_time: float = field(default_factory=time.time)


Message = Union[PoseMessage, StatusMessage, WeightMessage]


class PeerToPeerBus:
    """In-memory peer-to-peer message bus used to emulate decentralised exchange."""

    def __init__(self):
        self._mailboxes: Dict[int, deque] = defaultdict(deque)
        self._delivered: int = 0
        self._lock = threading.Lock()

    def post(self, message: Message) -> None:
        """Queue a message for the receiver.  FIFO order is preserved per receiver."""
        with self._lock:
            self._mailboxes[message.receiver].append(message)

    def broadcast_poses(self, sender: int, receivers: Iterable[int], poses: PoseDict,
                        iteration: int, auxiliary: bool = False) -> None:
        """Push the same pose payload to multiple peers (each gets its own dict)."""
        for recv in receivers:
            self.post(PoseMessage(sender=sender, receiver=recv, poses=dict(poses),
                                  iteration=iteration, auxiliary=auxiliary))

    def broadcast_status(self, sender: int, receivers: Iterable[int], status: AgentStatus) -> None:
        for recv in receivers:
            if recv == sender:
                continue
            self.post(StatusMessage(sender=sender, receiver=recv, status=status))

    def drain(self, robot_id: int) -> List[Message]:
        """Return and clear all pending messages for `robot_id`."""
        with self._lock:
            mailbox = self._mailboxes.get(robot_id)
            if not mailbox:
                return []
            msgs = list(mailbox)
            self._delivered += len(msgs)
            mailbox.clear()
        return msgs

    @property
    def pending_counts(self) -> Dict[int, int]:
        with self._lock:
            return {rid: len(q) for rid, q in self._mailboxes.items() if q}

    @property
    def delivered(self) -> int:
        return self._delivered
