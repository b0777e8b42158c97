from __future__ import annotations
"""Finite state machine utility keyed by (current status, action).

Each row names the actor roles allowed to perform the action, the statuses the
action may leave the record in, and the processor operations it issues.
Usage:
    from rental_engine.utils.fsm import Transition, TransitionTable
    TABLE = TransitionTable([
        Transition('approve', 'requested', {'approved_paid'}, {'lender'}, ('capture_hold',)),
        Transition('pickup', 'approved_paid', {'picked_up'}, {'lender'}),
    ])
    row = TABLE.resolve(current_status, 'approve', role)

A ``source`` of ``None`` marks a creating action (no prior record).
Raises AuthorizationError for a role the action never admits and
NotFoundOrWrongState for any (status, action) pair not in the table.
"""
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, List, Optional, Set, Tuple

from rental_engine.errors import AuthorizationError, NotFoundOrWrongState


@dataclass(frozen=True)
class Transition:
    action: str
    source: Optional[str]
    targets: FrozenSet[str]
    actors: FrozenSet[str]
    payment_calls: Tuple[str, ...] = ()

    def __post_init__(self):
        # accept plain sets / lists from table literals
        object.__setattr__(self, 'targets', frozenset(self.targets))
        object.__setattr__(self, 'actors', frozenset(self.actors))
        object.__setattr__(self, 'payment_calls', tuple(self.payment_calls))


class TransitionTable:
    def __init__(self, transitions: Iterable[Transition], field_name: str = 'status'):
        self.field_name = field_name
        self._rows: Dict[Tuple[Optional[str], str], Transition] = {}
        for t in transitions:
            key = (t.source, t.action)
            if key in self._rows:
                raise ValueError(f'duplicate transition {t.source} --{t.action}-->')
            self._rows[key] = t

    def __iter__(self):
        return iter(self._rows.values())

    def __len__(self):
        return len(self._rows)

    def actions(self) -> List[str]:
        seen: List[str] = []
        for _, action in self._rows:
            if action not in seen:
                seen.append(action)
        return seen

    def sources(self, action: str) -> Tuple[str, ...]:
        """Statuses from which ``action`` may run; the guard of a conditional write."""
        return tuple(src for (src, act) in self._rows if act == action and src is not None)

    def actors(self, action: str) -> FrozenSet[str]:
        out: Set[str] = set()
        for t in self._rows.values():
            if t.action == action:
                out |= t.actors
        return frozenset(out)

    def allows(self, current: Optional[str], action: str) -> bool:
        return (current, action) in self._rows

    def resolve(self, current: Optional[str], action: str, role: Optional[str] = None) -> Transition:
        if role is not None and role not in self.actors(action):
            raise AuthorizationError(f'Only the {" or ".join(sorted(self.actors(action)))} can {action}')
        row = self._rows.get((current, action))
        if row is None:
            raise NotFoundOrWrongState()
        return row

    @property
    def graph(self) -> Dict[str, Set[str]]:
        """Status graph (status -> reachable statuses) derived from the rows."""
        out: Dict[str, Set[str]] = {}
        for t in self._rows.values():
            if t.source is None:
                continue
            out.setdefault(t.source, set()).update(t.targets - {t.source})
        return out

__all__ = ['Transition', 'TransitionTable']
