"""
Task SLA — overdue task escalation and due-soon reminders.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from leadflow.engine.base import CreateNotification, UpdateTask, as_utc
from leadflow.engine.engine_config import get_setting


@dataclass(frozen=True)
class TaskSnapshot:
    id: int
    lead_id: int
    title: str
    assigned_to: Optional[int]
    due_at: Optional[datetime]
    status: str = 'pending'
    reminded_at: Optional[datetime] = None
    escalated: bool = False


def is_overdue(task: TaskSnapshot, now: datetime) -> bool:
    return task.status == 'pending' and task.due_at is not None and as_utc(task.due_at) < as_utc(now)


def needs_reminder(task: TaskSnapshot, now: datetime) -> bool:
    if task.status != 'pending' or task.due_at is None or task.reminded_at is not None:
        return False
    window = timedelta(hours=float(get_setting('tasks', 'reminder_window_hours')))
    due = as_utc(task.due_at)
    return as_utc(now) <= due <= as_utc(now) + window


def overdue_effects(task: TaskSnapshot, now: datetime) -> List:
    """Flip the task to overdue + escalated and tell its owner."""
    effects = [UpdateTask(task.id, {'status': 'overdue', 'escalated': True, 'escalated_at': now})]
    if task.assigned_to is None:
        return effects
    effects.append(CreateNotification(
        agent_id=task.assigned_to,
        lead_id=task.lead_id,
        type='task_overdue',
        title=f"Task overdue: {task.title}",
        message=f"'{task.title}' was due {as_utc(task.due_at):%Y-%m-%d %H:%M} UTC.",
        created_at=now,
        extra={'task_id': task.id},
    ))
    return effects


def reminder_effects(task: TaskSnapshot, now: datetime) -> List:
    effects = [UpdateTask(task.id, {'reminded_at': now})]
    if task.assigned_to is None:
        return effects
    minutes = int((as_utc(task.due_at) - as_utc(now)).total_seconds() // 60)
    effects.append(CreateNotification(
        agent_id=task.assigned_to,
        lead_id=task.lead_id,
        type='task_reminder',
        title=f"Task due soon: {task.title}",
        message=f"'{task.title}' is due in {minutes} minutes.",
        created_at=now,
        extra={'task_id': task.id},
    ))
    return effects
