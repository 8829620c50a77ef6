"""
RelayService: the one long-lived owner of the relay.

Holds the connection, the router and the dispatcher, and processes stream
events strictly one at a time through a FIFO queue with a single worker.
"""

import asyncio
import logging
import random
from typing import Any, Dict, List, Optional

from backend.config import RelayConfig, RollOwnership
from backend.db import SessionLocal
from backend.relay.connection import ConnectionManager, ConnectionStatus
from backend.relay.dispatcher import RollDispatcher
from backend.relay.parser import MalformedRollEvent, extract_roll_info
from backend.relay.router import ExecutionRouter
from backend.relay.schemas import ExecutionTier, RollOutcome

logger = logging.getLogger(__name__)


class RelayObserver:
    """Override what you need; every hook defaults to a no-op."""

    def on_status_change(self, status: ConnectionStatus):
        pass

    def on_roll_processed(self, outcome: RollOutcome):
        pass

    def on_notification(self, level: str, message: str):
        pass


class RelayService:
    def __init__(self, config: RelayConfig, session_factory=SessionLocal, presence=None,
                 remote_executor=None, transport=None, sleep=asyncio.sleep,
                 authorization_check=None, rng=random):
        self.config = config
        self.session_factory = session_factory
        self.observers: List[RelayObserver] = []

        self.dispatcher = RollDispatcher(
            rng=rng,
            skip_spell_slot=lambda: self.config.skip_spell_slot_consumption,
        )
        self.router = ExecutionRouter(
            self.dispatcher,
            ownership_provider=lambda: self.config.roll_ownership,
            presence=presence,
            remote_executor=remote_executor,
            rpc_timeout=config.rpc_timeout,
        )
        self.connection = ConnectionManager(
            config,
            on_roll_event=self.enqueue,
            on_status_change=self._status_changed,
            on_notification=self.notify,
            transport=transport,
            sleep=sleep,
            authorization_check=authorization_check,
        )

        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def add_observer(self, observer: RelayObserver):
        self.observers.append(observer)

    # ============================================================================
    # LIFECYCLE
    # ============================================================================

    async def start(self, connect: Optional[bool] = None):
        """Start the worker and, when configured to, connect."""
        if self.running:
            return
        self._queue = asyncio.Queue()
        self._worker = asyncio.create_task(self._work())
        logger.info("🎲 Roll relay started")

        if connect is None:
            connect = self.config.autoconnect
        if connect and self.config.is_valid:
            await self.connection.connect()

    async def stop(self):
        await self.connection.disconnect()
        if self._worker is not None:
            self._worker.cancel()
            await asyncio.wait({self._worker})
            self._worker = None
        logger.info("🛑 Roll relay stopped")

    # ============================================================================
    # SETTINGS
    # ============================================================================

    def settings(self) -> Dict[str, Any]:
        return {
            "roll_ownership": self.config.roll_ownership.value,
            "skip_spell_slot_consumption": self.config.skip_spell_slot_consumption,
        }

    def update_settings(self, roll_ownership: Optional[RollOwnership] = None,
                        skip_spell_slot_consumption: Optional[bool] = None) -> Dict[str, Any]:
        if roll_ownership is not None:
            self.config.roll_ownership = RollOwnership(roll_ownership)
        if skip_spell_slot_consumption is not None:
            self.config.skip_spell_slot_consumption = skip_spell_slot_consumption
        logger.info(f"Relay settings updated: {self.settings()}")
        return self.settings()

    # ============================================================================
    # EVENT QUEUE
    # ============================================================================

    def enqueue(self, payload: Dict[str, Any]):
        """Queue a raw stream event; processed after everything queued before it."""
        if self._queue is None:
            logger.warning("Roll event received before the relay started; dropped")
            return
        self._queue.put_nowait((payload, None))

    async def submit(self, payload: Dict[str, Any]) -> Optional[RollOutcome]:
        """Queue a raw event and wait for its outcome (None when it was dropped)."""
        if self._queue is None:
            raise RuntimeError("Relay service is not running")
        future = asyncio.get_running_loop().create_future()
        self._queue.put_nowait((payload, future))
        return await future

    async def join(self):
        """Wait until every queued event has been processed."""
        if self._queue is not None:
            await self._queue.join()

    async def _work(self):
        while True:
            payload, future = await self._queue.get()
            outcome = None
            try:
                outcome = await self.process_event(payload)
            except Exception as e:
                logger.error(f"❌ Relay worker failed on an event: {e}", exc_info=True)
            finally:
                if future is not None and not future.done():
                    future.set_result(outcome)
                self._queue.task_done()

    async def process_event(self, payload: Dict[str, Any]) -> Optional[RollOutcome]:
        """Parse, route and record one raw event. Nothing raised here leaves this method."""
        try:
            event = extract_roll_info(payload)
        except MalformedRollEvent as e:
            logger.warning(f"Dropping malformed roll event: {e}")
            return None

        db = self.session_factory()
        try:
            outcome = await self.router.process(db, event)
        except Exception as e:
            logger.error(f"❌ Roll event '{event.action}' could not be processed: {e}", exc_info=True,
                         extra={"character_id": event.character_id})
            self.notify("error", f"Roll '{event.action}' from {event.character_name} could not be processed")
            return None
        finally:
            db.close()

        if outcome.tier == ExecutionTier.FAILED:
            self.notify("error", f"Roll '{event.action}' from {event.character_name} could not be recorded")

        for observer in list(self.observers):
            try:
                observer.on_roll_processed(outcome)
            except Exception as e:
                logger.warning(f"Observer {observer!r} failed on roll: {e}")
        return outcome

    # ============================================================================
    # FAN-OUT
    # ============================================================================

    def _status_changed(self, status: ConnectionStatus):
        logger.info(f"Relay status → {status.value}", extra={"session_id": self.connection.session_id})
        for observer in list(self.observers):
            try:
                observer.on_status_change(status)
            except Exception as e:
                logger.warning(f"Observer {observer!r} failed on status change: {e}")

    def notify(self, level: str, message: str):
        for observer in list(self.observers):
            try:
                observer.on_notification(level, message)
            except Exception as e:
                logger.warning(f"Observer {observer!r} failed on notification: {e}")
