"""
Batch Operations

Tagged variant of the writes accepted by
NudgeRepository.perform_batch_operations.
"""

from dataclasses import dataclass
from typing import Union

from milo_nudges.models.nudge import Nudge


@dataclass(frozen=True)
class CreateOperation:
    data: Nudge


@dataclass(frozen=True)
class UpdateOperation:
    id: str
    data: Nudge


@dataclass(frozen=True)
class DeleteOperation:
    id: str


class BatchOperation:
    """Constructors for the three batch operation kinds."""

    @staticmethod
    def create(nudge: Nudge) -> CreateOperation:
        return CreateOperation(data=nudge)

    @staticmethod
    def update(nudge: Nudge) -> UpdateOperation:
        if not nudge.id:
            raise ValueError("Nudge ID cannot be empty for an update operation")
        return UpdateOperation(id=nudge.id, data=nudge)

    @staticmethod
    def delete(nudge_id: str) -> DeleteOperation:
        if not nudge_id:
            raise ValueError("Nudge ID cannot be empty for a delete operation")
        return DeleteOperation(id=nudge_id)


AnyBatchOperation = Union[CreateOperation, UpdateOperation, DeleteOperation]
