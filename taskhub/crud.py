import logging
import math
from datetime import date, timedelta
from typing import List, Optional

from passlib.hash import bcrypt
from sqlalchemy import func, or_
from sqlalchemy.orm import Session, selectinload

from . import models, schemas
from .database import atomic
from .errors import NotFound
from .permissions import ensure_can_access

logger = logging.getLogger(__name__)

DEFAULT_PER_PAGE = 15
MAX_PER_PAGE = 50

TASK_SORT_FIELDS = {
    "created_at": models.Task.created_at,
    "due_date": models.Task.due_date,
    "title": models.Task.title,
    "status": models.Task.status,
}
USER_SORT_FIELDS = ("created_at", "name", "email", "tasks_count")

DUE_DATE_FILTERS = ("overdue", "today", "this_week", "no_due_date")


# PAGINATION

def clamp_per_page(per_page: Optional[int]) -> int:
    if per_page is None:
        return DEFAULT_PER_PAGE
    return max(1, min(per_page, MAX_PER_PAGE))


def paginate(query, page: int = 1, per_page: Optional[int] = None):
    """Slice ``query`` into one page and describe where that page sits."""
    per_page = clamp_per_page(per_page)
    page = max(1, page or 1)
    total = query.order_by(None).count()
    items = query.offset((page - 1) * per_page).limit(per_page).all()
    meta = {
        "current_page": page,
        "last_page": max(1, math.ceil(total / per_page)),
        "per_page": per_page,
        "total": total,
    }
    return items, meta


def _contains(search: str) -> str:
    """LIKE pattern matching ``search`` literally anywhere in the value."""
    escaped = search.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _direction(column, sort_order: str):
    return column.asc() if sort_order == "asc" else column.desc()


# USERS

def create_user(db: Session, user: schemas.UserCreate, role: str = models.ROLE_USER):
    """Add the user and flush so it has an id. The caller commits."""
    hashed = bcrypt.hash(user.password)
    db_user = models.User(name=user.name, email=user.email, hashed_password=hashed, role=role)
    db.add(db_user)
    db.flush()
    return db_user


def get_user_by_email(db: Session, email: str):
    return db.query(models.User).filter(models.User.email == email).first()


def get_user_by_id(db: Session, user_id: int):
    return db.query(models.User).filter(models.User.id == user_id).first()


def get_users_filtered(db: Session, search=None, role=None, verified=None, sort_by="created_at",
                       sort_order="desc", page=1, per_page=None):
    """Admin user listing. Each item is a ``(User, tasks_count)`` pair."""
    tasks_count = func.count(models.Task.id).label("tasks_count")
    q = (
        db.query(models.User, tasks_count)
        .outerjoin(models.Task, models.Task.user_id == models.User.id)
        .group_by(models.User.id)
    )
    if search:
        like = _contains(search)
        q = q.filter(or_(
            models.User.name.ilike(like, escape="\\"),
            models.User.email.ilike(like, escape="\\"),
        ))
    if role:
        q = q.filter(models.User.role == role)
    if verified == "1":
        q = q.filter(models.User.email_verified_at.isnot(None))
    elif verified == "0":
        q = q.filter(models.User.email_verified_at.is_(None))

    if sort_by not in USER_SORT_FIELDS:
        sort_by, sort_order = "created_at", "desc"
    column = tasks_count if sort_by == "tasks_count" else getattr(models.User, sort_by)
    q = q.order_by(_direction(column, sort_order), _direction(models.User.id, sort_order))
    return paginate(q, page, per_page)


# TASKS

def get_task(db: Session, task_id: int):
    return (
        db.query(models.Task)
        .options(selectinload(models.Task.tags), selectinload(models.Task.user))
        .filter(models.Task.id == task_id)
        .first()
    )


def get_task_for(db: Session, actor: models.User, task_id: int, action: str = "view"):
    """Load a task the actor may act on.

    A missing task is a 404; an existing task owned by someone else is a 403.
    """
    task = get_task(db, task_id)
    if not task:
        raise NotFound("Task not found")
    ensure_can_access(actor, task.user_id, f"Unauthorized to {action} this task")
    return task


def replace_tags(db: Session, task: models.Task, names: List[str]):
    """Delete every tag of ``task`` and recreate the set from ``names``.

    Runs inside the caller's transaction and never commits.
    """
    task.tags.clear()
    db.flush()
    for name in names:
        task.tags.append(models.Tag(name=name.strip()))
    db.flush()


def create_task(db: Session, actor: models.User, task: schemas.TaskCreate):
    with atomic(db, "Failed to create task"):
        db_task = models.Task(
            user_id=actor.id,
            title=task.title,
            description=task.description,
            status=task.status,
            due_date=task.due_date,
        )
        db.add(db_task)
        db.flush()
        if task.tags is not None:
            replace_tags(db, db_task, task.tags)
    db.refresh(db_task)
    logger.info("Task %s created by user %s", db_task.id, actor.id)
    return db_task


def update_task(db: Session, actor: models.User, task_id: int, task_update: schemas.TaskUpdate):
    db_task = get_task_for(db, actor, task_id, action="update")
    changes = task_update.model_dump(exclude_unset=True)
    tags = changes.pop("tags", None)

    with atomic(db, "Failed to update task"):
        for field, value in changes.items():
            setattr(db_task, field, value)
        if "tags" in task_update.model_fields_set:
            replace_tags(db, db_task, tags or [])
    db.refresh(db_task)
    logger.info("Task %s updated by user %s", db_task.id, actor.id)
    return db_task


def delete_task(db: Session, actor: models.User, task_id: int):
    db_task = get_task_for(db, actor, task_id, action="delete")
    with atomic(db, "Failed to delete task"):
        db.delete(db_task)
    logger.info("Task %s deleted by user %s", task_id, actor.id)


def get_tasks_filtered(db: Session, actor: models.User, search=None, search_tags=False, status=None,
                       user_id=None, due_date_from=None, due_date_to=None, tags=None,
                       due_date_filter=None, sort_by="created_at", sort_order="desc",
                       page=1, per_page=None, today: date = None):
    """Filtered, sorted, paginated task listing.

    Non-admins only ever see their own tasks. All filters are optional and
    combine with AND.
    """
    Task = models.Task
    q = db.query(Task).options(selectinload(Task.tags), selectinload(Task.user))

    if not actor.is_admin:
        q = q.filter(Task.user_id == actor.id)
    if user_id:
        q = q.filter(Task.user_id == user_id)

    if search:
        like = _contains(search)
        conditions = [Task.title.ilike(like, escape="\\"), Task.description.ilike(like, escape="\\")]
        if search_tags:
            conditions.append(Task.tags.any(models.Tag.name.ilike(like, escape="\\")))
        q = q.filter(or_(*conditions))

    if status:
        q = q.filter(Task.status == status)

    # Range only applies with both ends given.
    if due_date_from and due_date_to:
        q = q.filter(Task.due_date >= due_date_from, Task.due_date <= due_date_to)

    if tags:
        q = q.filter(Task.tags.any(models.Tag.name.in_(tags)))

    if due_date_filter:
        q = apply_due_date_filter(q, due_date_filter, today or date.today())

    column = TASK_SORT_FIELDS.get(sort_by)
    if column is None:
        column, sort_order = Task.created_at, "desc"
    q = q.order_by(_direction(column, sort_order), _direction(Task.id, sort_order))
    return paginate(q, page, per_page)


def apply_due_date_filter(q, due_date_filter: str, today: date):
    Task = models.Task
    if due_date_filter not in DUE_DATE_FILTERS:
        logger.debug("Ignoring unknown due_date_filter %r", due_date_filter)
        return q
    if due_date_filter == "overdue":
        return q.filter(Task.due_date < today, Task.status != models.STATUS_COMPLETED)
    if due_date_filter == "today":
        return q.filter(Task.due_date == today)
    if due_date_filter == "this_week":
        end_of_week = today + timedelta(days=6 - today.weekday())
        return q.filter(Task.due_date >= today, Task.due_date <= end_of_week)
    return q.filter(Task.due_date.is_(None))  # no_due_date


# ADMIN

def dashboard_statistics(db: Session, today: date = None):
    today = today or date.today()
    Task = models.Task

    by_status = dict(db.query(Task.status, func.count(Task.id)).group_by(Task.status).all())

    statistics = {
        "total_users": db.query(func.count(models.User.id)).scalar(),
        "total_tasks": db.query(func.count(Task.id)).scalar(),
        "overdue_tasks": db.query(func.count(Task.id))
        .filter(Task.due_date < today, Task.status != models.STATUS_COMPLETED)
        .scalar(),
    }
    for status in models.TASK_STATUSES:
        statistics[f"{status}_tasks"] = by_status.get(status, 0)
    recent_users = (
        db.query(models.User)
        .order_by(models.User.created_at.desc(), models.User.id.desc())
        .limit(5)
        .all()
    )
    recent_tasks = (
        db.query(Task)
        .options(selectinload(Task.tags), selectinload(Task.user))
        .order_by(Task.created_at.desc(), Task.id.desc())
        .limit(5)
        .all()
    )
    return {"statistics": statistics, "recent_users": recent_users, "recent_tasks": recent_tasks}
