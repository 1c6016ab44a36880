"""
Kindred - Availability Simulator
Time-of-day and fatigue driven away state, plus hourly message counters.
"""

import math
import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Optional

import constants
import logger as log

SLEEPING = "time_to_sleep"
TIRED = "tired"


@dataclass
class AvailabilityState:
    is_away: bool = False
    away_reason: Optional[str] = None
    away_until: Optional[datetime] = None

    def clear(self):
        self.is_away = False
        self.away_reason = None
        self.away_until = None


@dataclass
class MessageCounter:
    """Messages answered in the current rolling hour."""
    hourly: int = 0
    last_reset: datetime = field(default_factory=datetime.now)

    def roll(self, now: datetime):
        if (now - self.last_reset).total_seconds() >= constants.COUNTER_WINDOW_SECONDS:
            self.hourly = 0
            self.last_reset = now


class AvailabilitySimulator:
    """Owns the away state and the global/per-community message counters."""

    def __init__(
        self,
        active_hours_start: int = constants.ACTIVE_HOURS_START,
        active_hours_end: int = constants.ACTIVE_HOURS_END,
        max_messages_per_hour: int = constants.MAX_MESSAGES_PER_HOUR,
        rng: random.Random = None,
        name: str = None,
    ):
        self.active_hours_start = active_hours_start
        self.active_hours_end = active_hours_end
        self.max_messages_per_hour = max_messages_per_hour
        self.rng = rng or random.Random()
        self.name = name

        self.state = AvailabilityState()
        self.global_counter = MessageCounter()
        self.community_counters: Dict[str, MessageCounter] = {}

    # --- Counters ---

    def _counter(self, community_id: Optional[str], now: datetime, create: bool = True) -> MessageCounter:
        if community_id is None:
            return self.global_counter
        counter = self.community_counters.get(community_id)
        if counter is None:
            if not create:
                return self.global_counter
            counter = MessageCounter(last_reset=now)
            self.community_counters[community_id] = counter
        return counter

    def increment_message_counter(self, community_id: Optional[str] = None, now: datetime = None):
        """Count one answered message globally and, if given, for the community."""
        now = now or datetime.now()
        self.global_counter.roll(now)
        self.global_counter.hourly += 1
        if community_id is not None:
            counter = self._counter(community_id, now)
            counter.roll(now)
            counter.hourly += 1

    def is_energy_low(self, community_id: Optional[str] = None) -> bool:
        """True once the scope's counter passes 80% of the hourly cap."""
        counter = self._counter(community_id, datetime.now(), create=False)
        return counter.hourly > self.max_messages_per_hour * constants.LOW_ENERGY_RATIO

    # --- Away state ---

    def is_away(self, now: datetime = None) -> bool:
        """Current away flag; clears itself once away_until has passed."""
        if not self.state.is_away:
            return False
        now = now or datetime.now()
        if self.state.away_until is not None and now >= self.state.away_until:
            log.info(f"Back from away ({self.state.away_reason})", self.name)
            self.state.clear()
            return False
        return True

    def _outside_active_hours(self, hour: int) -> bool:
        return hour < self.active_hours_start or hour >= self.active_hours_end

    def _next_wake(self, now: datetime) -> datetime:
        wake = now.replace(hour=self.active_hours_start, minute=0, second=0, microsecond=0)
        if now.hour >= self.active_hours_start:
            wake += timedelta(days=1)
        return wake

    def should_go_away(self, community_id: Optional[str] = None, now: datetime = None) -> bool:
        """Evaluate sleep then fatigue; on a hit, mark the agent away and return True."""
        now = now or datetime.now()

        if self._outside_active_hours(now.hour):
            self.state.is_away = True
            self.state.away_reason = SLEEPING
            self.state.away_until = self._next_wake(now)
            log.info(f"Going to sleep until {self.state.away_until:%H:%M}", self.name)
            return True

        counter = self._counter(community_id, now)
        counter.roll(now)
        if counter.hourly >= self.max_messages_per_hour:
            self.state.is_away = True
            self.state.away_reason = TIRED
            self.state.away_until = now + timedelta(minutes=constants.TIRED_AWAY_MINUTES)
            log.info(f"Too many messages ({counter.hourly}/h), taking a break", self.name)
            return True

        return False

    def away_message(self, reason: Optional[str] = None, until: Optional[datetime] = None, now: datetime = None) -> str:
        """Pick an excuse for the current (or given) away reason."""
        reason = reason or self.state.away_reason
        until = until or self.state.away_until
        now = now or datetime.now()

        if reason == SLEEPING:
            return self.rng.choice(constants.SLEEP_MESSAGES)
        if reason == TIRED:
            minutes = math.ceil((until - now).total_seconds() / 60) if until else constants.TIRED_AWAY_MINUTES
            return self.rng.choice(constants.TIRED_MESSAGES).format(minutes=max(minutes, 1))
        return constants.GENERIC_AWAY_MESSAGE

    def reset_away_status(self):
        self.state.clear()
        log.info("Away status reset", self.name)

    def snapshot(self) -> dict:
        return {
            "isAway": self.state.is_away,
            "awayReason": self.state.away_reason,
            "awayUntil": self.state.away_until.isoformat() if self.state.away_until else None,
            "hourlyMessages": self.global_counter.hourly,
        }
