from __future__ import annotations
"""Allowed status transitions for lifecycle models (orders).

    ORDER_FSM = TransitionValidator({'NEW': {'APPROVED'}, 'APPROVED': set()})
    ORDER_FSM.assert_can_transition(order.status, 'APPROVED')

Unknown statuses and disallowed moves abort with 400.
"""
from typing import Dict, Set
from flask import abort


class TransitionValidator:
    def __init__(self, graph: Dict[str, Set[str]], field_name: str = 'status'):
        self.graph = graph
        self.field_name = field_name

    def allowed_targets(self, current: str) -> Set[str]:
        return set(self.graph.get(current, set()))

    def assert_can_transition(self, current: str, target: str):
        if target not in self.graph:
            abort(400, description=f"{self.field_name} invalid")
        if target not in self.allowed_targets(current):
            abort(400, description=f"Invalid {self.field_name} transition {current} -> {target}")
        return True

__all__ = ['TransitionValidator']
