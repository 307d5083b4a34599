"""Simulated peer replies.

Stands in for a real peer endpoint: every outbound message gets exactly
one canned inbound reply on the same thread after a random delay.
"""

from __future__ import annotations

import random
from typing import Callable, Sequence

from loguru import logger

from bluechat.chat.conversation import ConversationStore, Direction, Message
from bluechat.chat.scheduler import Scheduler

DEFAULT_REPLIES: tuple[str, ...] = (
    "Got your message!",
    "Thanks for reaching out via Bluetooth!",
    "This offline chat is pretty cool!",
    "No internet needed for this conversation!",
    "Bluetooth messaging works great!",
    "I received your message loud and clear!",
    "Peer-to-peer communication is awesome!",
)


class ResponseSimulator:
    """Schedules one delayed canned reply per outbound message.

    Parameters
    ----------
    store:
        Thread store the reply is appended to.
    scheduler:
        Runs the deferred reply.
    replies:
        Non-empty pool of reply texts, chosen uniformly.
    min_delay / max_delay:
        Reply delay is drawn uniformly from this interval (seconds).
    rng:
        Random source; pass a seeded ``random.Random`` for deterministic runs.
    is_connected:
        Optional ``(device_id) -> bool`` used with
        ``deliver_after_disconnect=False`` to drop replies for peers that
        went away. By default replies are delivered regardless, the thread
        is durable even when the live connection is not.
    """

    def __init__(
        self,
        store: ConversationStore,
        scheduler: Scheduler,
        *,
        replies: Sequence[str] = DEFAULT_REPLIES,
        min_delay: float = 1.0,
        max_delay: float = 3.0,
        rng: random.Random | None = None,
        is_connected: Callable[[str], bool] | None = None,
        deliver_after_disconnect: bool = True,
    ) -> None:
        if not replies:
            raise ValueError("reply pool must not be empty")
        if min_delay < 0 or max_delay < min_delay:
            raise ValueError(f"invalid reply delay range [{min_delay}, {max_delay}]")
        self.store = store
        self.scheduler = scheduler
        self.replies = tuple(replies)
        self.min_delay = min_delay
        self.max_delay = max_delay
        self.rng = rng or random.Random()
        self.is_connected = is_connected
        self.deliver_after_disconnect = deliver_after_disconnect

    def on_outbound_sent(self, message: Message) -> float:
        """Schedule the reply to *message*; return the chosen delay."""
        if message.direction != Direction.OUTBOUND:
            raise ValueError("only outbound messages get a simulated reply")

        delay = self.rng.uniform(self.min_delay, self.max_delay)
        text = self.rng.choice(self.replies)
        self.scheduler.call_later(
            delay,
            lambda: self._deliver(message.device_id, message.device_name, text),
            label=f"reply-{message.device_id}",
        )
        logger.debug(f"[Responder] reply to {message.device_id} in {delay:.2f}s")
        return delay

    def _deliver(self, device_id: str, device_name: str, text: str) -> None:
        if (
            not self.deliver_after_disconnect
            and self.is_connected is not None
            and not self.is_connected(device_id)
        ):
            logger.info(f"[Responder] dropping reply for disconnected {device_id}")
            return
        self.store.append(Message(
            device_id=device_id,
            device_name=device_name,
            content=text,
            direction=Direction.INBOUND,
        ))
