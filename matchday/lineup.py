"""In-memory tactical board for a single match-editing session.

The board is ephemeral: it is rebuilt whenever a match is selected and is
never written to the database. Invalid requests (full slot, position
mismatch, unknown player) are logged and ignored instead of raising so
that drag and drop interactions stay frictionless.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Iterator, Mapping

from .formations import Formation, default_formation

logger = logging.getLogger(__name__)

BENCH = "BENCH"
FIELD_LINES = ("POR", "DEF", "MED", "DEL")
FIELD_SLOT_CAPACITY = 2
GOALKEEPER_SLOTS = 1

POLICY_PERMISSIVE = "permissive"
POLICY_STRICT = "strict"
UNKNOWN_POSITION_POLICY = os.getenv("UNKNOWN_POSITION_POLICY", POLICY_PERMISSIVE).lower()


class AttendanceStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    ABSENT = "absent"


class Position(str, Enum):
    """Canonical playing positions, keyed by the board line they belong to."""

    GOALKEEPER = "POR"
    DEFENDER = "DEF"
    MIDFIELDER = "MED"
    FORWARD = "DEL"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, raw: str | None) -> "Position":
        """Map a roster position string (PORTERO, DEFENSA, ...) onto a Position.

        Never raises: anything outside the four roster values is UNKNOWN.
        """
        if not raw:
            return cls.UNKNOWN
        return _ROSTER_POSITIONS.get(raw.strip().upper(), cls.UNKNOWN)

    @property
    def line(self) -> str | None:
        return None if self is Position.UNKNOWN else self.value


_ROSTER_POSITIONS = {
    "PORTERO": Position.GOALKEEPER,
    "DEFENSA": Position.DEFENDER,
    "MEDIOCENTRO": Position.MIDFIELDER,
    "DELANTERO": Position.FORWARD,
}


@dataclass(frozen=True)
class PlayerRef:
    player_id: str
    player_name: str
    player_number: str
    player_position: str
    profile_image_url: str | None = None

    @property
    def position(self) -> Position:
        return Position.parse(self.player_position)

    def to_dict(self) -> dict[str, object]:
        return {
            "playerId": self.player_id,
            "playerName": self.player_name,
            "playerNumber": self.player_number,
            "playerPosition": self.player_position,
            "profileImageUrl": self.profile_image_url,
        }


@dataclass
class Slot:
    players: list[PlayerRef] = field(default_factory=list)

    def has(self, player_id: str) -> bool:
        return any(player.player_id == player_id for player in self.players)

    def discard(self, player_id: str) -> PlayerRef | None:
        for index, player in enumerate(self.players):
            if player.player_id == player_id:
                return self.players.pop(index)
        return None


@dataclass(frozen=True)
class PlayerLocation:
    position: str
    slot_index: int | None = None


@dataclass
class LineupState:
    lines: dict[str, list[Slot]]
    bench: Slot = field(default_factory=Slot)

    @classmethod
    def empty(cls, formation: Formation | None = None) -> "LineupState":
        counts = (formation or default_formation())["positions"]
        lines = {"POR": [Slot() for _ in range(GOALKEEPER_SLOTS)]}
        for line in FIELD_LINES[1:]:
            lines[line] = [Slot() for _ in range(counts[line])]
        return cls(lines=lines)

    def slots(self, position: str) -> list[Slot] | None:
        return self.lines.get(position)

    def field_players(self) -> Iterator[PlayerRef]:
        for line in FIELD_LINES:
            for slot in self.lines[line]:
                yield from slot.players


@dataclass
class MatchState:
    match_id: str | None = None
    lineup: LineupState = field(default_factory=LineupState.empty)
    override_out_of_position: bool = False
    attendances: dict[str, AttendanceStatus] = field(default_factory=dict)
    formation: Formation = field(default_factory=default_formation)


def _as_line(position: str) -> str:
    return position.value if isinstance(position, Enum) else position


def _jersey_key(player: PlayerRef) -> int:
    try:
        return int(player.player_number)
    except (TypeError, ValueError):
        return 0


def build_player_ref(record: Mapping[str, object]) -> PlayerRef:
    """Snapshot a roster record (as served by ``/api/players``) into a PlayerRef."""
    position = record.get("position") or "DEFENSA"
    return PlayerRef(
        player_id=str(record["id"]),
        player_name=str(record.get("name") or "Sin nombre"),
        player_number=str(record.get("jerseyNumber") or 0),
        player_position=str(position).upper(),
        profile_image_url=record.get("profileImageUrl"),
    )


class LineupStore:
    """Formation board plus attendance map for the currently selected match."""

    def __init__(self, match_id: str | None = None, *, unknown_policy: str = UNKNOWN_POSITION_POLICY) -> None:
        if unknown_policy not in (POLICY_PERMISSIVE, POLICY_STRICT):
            raise ValueError(f"Unknown position policy: {unknown_policy!r}")
        self.unknown_policy = unknown_policy
        self.state = MatchState(match_id=match_id)

    @property
    def match_id(self) -> str | None:
        return self.state.match_id

    @property
    def lineup(self) -> LineupState:
        return self.state.lineup

    @property
    def attendances(self) -> dict[str, AttendanceStatus]:
        return self.state.attendances

    @property
    def override_out_of_position(self) -> bool:
        return self.state.override_out_of_position

    def set_match(self, match_id: str) -> None:
        self.state = MatchState(match_id=match_id)

    def set_override_out_of_position(self, enabled: bool) -> None:
        self.state.override_out_of_position = bool(enabled)

    def reset_lineup(self) -> None:
        self.state.lineup = LineupState.empty(self.state.formation)
        self.state.attendances = {}

    # -- queries ---------------------------------------------------------

    def find_player_position(self, player_id: str) -> PlayerLocation | None:
        for line in FIELD_LINES:
            for index, slot in enumerate(self.lineup.lines[line]):
                if slot.has(player_id):
                    return PlayerLocation(line, index)
        if self.lineup.bench.has(player_id):
            return PlayerLocation(BENCH)
        return None

    def find_player(self, player_id: str) -> PlayerRef | None:
        for line in FIELD_LINES:
            for slot in self.lineup.lines[line]:
                for player in slot.players:
                    if player.player_id == player_id:
                        return player
        for player in self.lineup.bench.players:
            if player.player_id == player_id:
                return player
        return None

    def is_compatible(self, player_position: str | None, position: str) -> bool:
        """Position-eligibility rule, ignoring capacity and the override flag."""
        parsed = Position.parse(player_position)
        if parsed is Position.UNKNOWN:
            return self.unknown_policy == POLICY_PERMISSIVE
        return parsed.line == position

    def can_drop_in_slot(self, position: str, slot_index: int = 0, player_position: str | None = None) -> bool:
        position = _as_line(position)
        if position == BENCH:
            return True
        slots = self.lineup.slots(position)
        if slots is None or not 0 <= slot_index < len(slots):
            return False
        if len(slots[slot_index].players) >= FIELD_SLOT_CAPACITY:
            return False
        if self.override_out_of_position or player_position is None:
            return True
        return self.is_compatible(player_position, position)

    def get_slot_occupancy(self, position: str) -> int:
        position = _as_line(position)
        if position == BENCH:
            return len(self.lineup.bench.players)
        slots = self.lineup.slots(position) or []
        return sum(len(slot.players) for slot in slots)

    def available_bench_players(self) -> list[PlayerRef]:
        """Bench players whose attendance is confirmed."""
        return [
            player
            for player in self.lineup.bench.players
            if self.attendances.get(player.player_id) == AttendanceStatus.CONFIRMED
        ]

    # -- mutations -------------------------------------------------------

    def place_player(self, player_id: str, from_position: str | None, to_position: str, slot_index: int = 0) -> bool:
        """Move a player already on the board to ``to_position``.

        Returns False (and leaves the board untouched) when the player is not
        on the board or the target slot rejects them.
        """
        to_position = _as_line(to_position)
        player = self.find_player(player_id)
        if player is None:
            logger.debug("Ignoring placement of %s: not on the board", player_id)
            return False

        current = self.find_player_position(player_id)
        if from_position is not None and current.position != from_position:
            logger.debug("Player %s is in %s, not %s", player_id, current.position, from_position)

        if to_position == BENCH and current.position == BENCH:
            self._sort_bench()
            return True
        if current.position == to_position and current.slot_index == slot_index:
            return True

        if not self.can_drop_in_slot(to_position, slot_index, player.player_position):
            logger.debug("Rejected %s for %s[%s]", player_id, to_position, slot_index)
            return False

        self._detach(player_id)
        self._attach(player, to_position, slot_index)
        return True

    def remove_player_from_slot(self, player_id: str) -> None:
        self._detach(player_id)

    def update_attendance(self, player_id: str, status: AttendanceStatus | str) -> None:
        status = AttendanceStatus(status)
        self.state.attendances[player_id] = status
        if status is AttendanceStatus.ABSENT:
            self.remove_player_from_slot(player_id)

    def clear_attendance(self, player_id: str) -> None:
        self.state.attendances.pop(player_id, None)

    def auto_assign_player(self, player_ref: PlayerRef) -> PlayerLocation:
        """Give a player a default placement in their own line, else the bench.

        Empty slots are filled before a second player is added to any slot,
        so a line spreads out across its slots in index order.
        """
        self._detach(player_ref.player_id)
        line = player_ref.position.line
        if line is not None:
            index = self._first_open_slot(line, player_ref)
            if index is not None:
                self._attach(player_ref, line, index)
                return PlayerLocation(line, index)
        self._attach(player_ref, BENCH)
        return PlayerLocation(BENCH)

    def restore_player(self, player_ref: PlayerRef, location: PlayerLocation) -> PlayerLocation:
        """Put a player back where they used to be.

        Eligibility is not re-checked since the player already held the slot.
        A slot that has filled up in the meantime falls back to auto-assignment.
        """
        self._detach(player_ref.player_id)
        if location.position == BENCH:
            self._attach(player_ref, BENCH)
            return location
        slots = self.lineup.slots(location.position)
        index = location.slot_index or 0
        if slots is not None and index < len(slots) and len(slots[index].players) < FIELD_SLOT_CAPACITY:
            self._attach(player_ref, location.position, index)
            return PlayerLocation(location.position, index)
        logger.debug("Slot %s[%s] is full; auto-assigning %s", location.position, index, player_ref.player_id)
        return self.auto_assign_player(player_ref)

    def move_to_bench(self, player_id: str) -> None:
        location = self.find_player_position(player_id)
        if location is None or location.position == BENCH:
            return
        player = self.lineup.lines[location.position][location.slot_index].discard(player_id)
        self._attach(player, BENCH)

    def swap_with_bench(self, field_player_id: str, bench_player_id: str) -> bool:
        location = self.find_player_position(field_player_id)
        if location is None or location.position == BENCH:
            return False
        bench_player = next(
            (player for player in self.lineup.bench.players if player.player_id == bench_player_id),
            None,
        )
        if bench_player is None:
            return False
        if not self.override_out_of_position and not self.is_compatible(
            bench_player.player_position, location.position
        ):
            return False

        slot = self.lineup.lines[location.position][location.slot_index]
        field_player = slot.discard(field_player_id)
        self.lineup.bench.discard(bench_player_id)
        slot.players.append(bench_player)
        self._attach(field_player, BENCH)
        return True

    def set_formation(self, formation: Formation) -> None:
        """Rebuild the field lines for ``formation``, keeping every player on the board."""
        previous = self.lineup
        displaced = list(previous.field_players())
        self.state.formation = formation
        self.state.lineup = LineupState.empty(formation)
        self.lineup.bench.players = list(previous.bench.players)

        for player in displaced:
            line = player.position.line
            index = self._first_open_slot(line, player) if line else None
            if index is None:
                self.lineup.bench.players.append(player)
            else:
                self.lineup.lines[line][index].players.append(player)
        self._sort_bench()

    def sync_from_server(self, attendance_records: Iterable[Mapping[str, object]],
                         roster: Iterable[Mapping[str, object]]) -> None:
        """Mirror server attendance and auto-assign confirmed players not yet placed."""
        for record in attendance_records:
            try:
                self.update_attendance(str(record["userId"]), record["status"])
            except (KeyError, ValueError):
                logger.warning("Skipping malformed attendance record: %r", record)
        for player in roster:
            player_id = str(player["id"])
            if self.attendances.get(player_id) != AttendanceStatus.CONFIRMED:
                continue
            if self.find_player_position(player_id) is None:
                self.auto_assign_player(build_player_ref(player))

    def snapshot(self) -> dict[str, object]:
        lineup = {
            line: [[player.to_dict() for player in slot.players] for slot in self.lineup.lines[line]]
            for line in FIELD_LINES
        }
        lineup[BENCH] = [player.to_dict() for player in self.lineup.bench.players]
        return {
            "matchId": self.match_id,
            "formation": self.state.formation["id"],
            "overrideOutOfPosition": self.override_out_of_position,
            "attendances": {key: value.value for key, value in self.attendances.items()},
            "lineup": lineup,
        }

    # -- internals -------------------------------------------------------

    def _first_open_slot(self, line: str, player: PlayerRef) -> int | None:
        slots = self.lineup.lines[line]
        for index, slot in enumerate(slots):
            if not slot.players and self.can_drop_in_slot(line, index, player.player_position):
                return index
        for index in range(len(slots)):
            if self.can_drop_in_slot(line, index, player.player_position):
                return index
        return None

    def _detach(self, player_id: str) -> None:
        for line in FIELD_LINES:
            for slot in self.lineup.lines[line]:
                slot.players = [player for player in slot.players if player.player_id != player_id]
        self.lineup.bench.players = [
            player for player in self.lineup.bench.players if player.player_id != player_id
        ]

    def _attach(self, player: PlayerRef, position: str, slot_index: int = 0) -> None:
        if position == BENCH:
            self.lineup.bench.players.append(player)
            self._sort_bench()
        else:
            self.lineup.lines[position][slot_index].players.append(player)

    def _sort_bench(self) -> None:
        self.lineup.bench.players.sort(key=_jersey_key)
