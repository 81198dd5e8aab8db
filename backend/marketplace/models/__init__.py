"""Model exports for SQLAlchemy/SQLModel metadata discovery."""

from marketplace.models.assignments import Assignment
from marketplace.models.notifications import Notification, NotificationType
from marketplace.models.proposals import Proposal
from marketplace.models.task_messages import TaskMessage
from marketplace.models.task_status_history import TaskStatusHistory
from marketplace.models.tasks import Task, TaskStatus
from marketplace.models.users import PrimaryRole, User

__all__ = [
    "Assignment",
    "Notification",
    "NotificationType",
    "PrimaryRole",
    "Proposal",
    "Task",
    "TaskMessage",
    "TaskStatus",
    "TaskStatusHistory",
    "User",
]
