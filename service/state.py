"""
Per-run working state: the resource occupancy indexes.

A ``WorkingState`` belongs to exactly one run. It is created when the run
starts and discarded when the result has been built.
"""
from typing import Dict, Iterable, List, Optional

from .types import Assignment, ScheduleVariable, TimeSlot

# resource kind -> resource id -> slot -> occupying variable ids
BusyIndex = Dict[str, Dict[TimeSlot, List[str]]]


class WorkingState:
    """Exclusivity indexes by teacher, room and class plus the assignment map."""

    def __init__(self):
        self.busy_by_teacher: BusyIndex = {}
        self.busy_by_room: BusyIndex = {}
        self.busy_by_class: BusyIndex = {}
        self.assignments: Dict[str, Assignment] = {}
        self._by_teacher: Dict[str, Dict[str, Assignment]] = {}
        self._by_class: Dict[str, Dict[str, Assignment]] = {}

    def index_for(self, kind: str) -> BusyIndex:
        return {
            "teacher": self.busy_by_teacher,
            "room": self.busy_by_room,
            "class": self.busy_by_class,
        }[kind]

    # ---------------------------------------------------------------- queries

    def occupants(self, kind: str, resource_id: Optional[str], slot: TimeSlot,
                  exclude: Optional[str] = None) -> List[str]:
        if resource_id is None:
            return []
        occupying = self.index_for(kind).get(resource_id, {}).get(slot, [])
        if exclude is None:
            return list(occupying)
        return [vid for vid in occupying if vid != exclude]

    def is_busy(self, kind: str, resource_id: Optional[str], slot: TimeSlot,
                exclude: Optional[str] = None) -> bool:
        return bool(self.occupants(kind, resource_id, slot, exclude))

    def teacher_assignments(self, teacher_id: Optional[str],
                            exclude: Optional[str] = None) -> List[Assignment]:
        if teacher_id is None:
            return []
        return [a for vid, a in self._by_teacher.get(teacher_id, {}).items() if vid != exclude]

    def class_assignments(self, class_id: str, exclude: Optional[str] = None) -> List[Assignment]:
        return [a for vid, a in self._by_class.get(class_id, {}).items() if vid != exclude]

    def block_siblings(self, variable: ScheduleVariable) -> List[Assignment]:
        """Placed assignments from the same block group, ordered by block index."""
        if not variable.is_block:
            return []
        siblings = [
            a for a in self._by_class.get(variable.class_id, {}).values()
            if a.variable.block_group_id == variable.block_group_id and a.variable.id != variable.id
        ]
        return sorted(siblings, key=lambda a: a.variable.block_index)

    # -------------------------------------------------------------- mutations

    def assign(self, variable: ScheduleVariable, slot: TimeSlot, room_id: Optional[str]) -> Assignment:
        if variable.id in self.assignments:
            raise ValueError(f"variable {variable.id} is already assigned")
        assignment = Assignment(variable=variable, slot=slot, room_id=room_id)
        self.assignments[variable.id] = assignment
        for kind, resource_id in variable.resources(room_id):
            if resource_id is not None:
                self.index_for(kind).setdefault(resource_id, {}).setdefault(slot, []).append(variable.id)
        if variable.teacher_id is not None:
            self._by_teacher.setdefault(variable.teacher_id, {})[variable.id] = assignment
        self._by_class.setdefault(variable.class_id, {})[variable.id] = assignment
        return assignment

    def unassign(self, variable_id: str) -> Assignment:
        assignment = self.assignments.pop(variable_id)
        variable = assignment.variable
        for kind, resource_id in variable.resources(assignment.room_id):
            if resource_id is None:
                continue
            by_slot = self.index_for(kind)[resource_id]
            by_slot[assignment.slot].remove(variable_id)
            if not by_slot[assignment.slot]:
                del by_slot[assignment.slot]
        if variable.teacher_id is not None:
            del self._by_teacher[variable.teacher_id][variable_id]
        del self._by_class[variable.class_id][variable_id]
        return assignment

    def unassign_all(self, variable_ids: Iterable[str]) -> None:
        for variable_id in variable_ids:
            if variable_id in self.assignments:
                self.unassign(variable_id)
