import logging
from datetime import date
from typing import List, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, Path, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from . import accounts, auth, config, crud, database, models, ratelimit, schemas, verification
from .database import get_db
from .errors import TaskHubError, Unauthenticated

logging.basicConfig(
    level=config.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="TaskHub API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def on_startup():
    models.Base.metadata.create_all(bind=database.engine)
    db = database.SessionLocal()
    try:
        accounts.ensure_admin_account(db)
    except TaskHubError as e:
        logger.error("Failed to ensure admin user exists: %s", e.message)
    finally:
        db.close()


# ERRORS

@app.exception_handler(TaskHubError)
async def taskhub_error_handler(request: Request, exc: TaskHubError):
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, Unauthenticated) else None
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    errors = {}
    for err in exc.errors():
        loc = [str(part) for part in err["loc"] if part not in ("body", "query", "path")]
        field = ".".join(loc) or "body"
        message = err["msg"]
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        errors.setdefault(field, []).append(message)
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"message": "Validation failed", "errors": errors},
    )


@app.get("/health")
def health_check():
    return {"status": "healthy"}


# AUTH

@app.post("/auth/signup", response_model=schemas.SignupResponse, status_code=status.HTTP_201_CREATED)
def signup(user: schemas.UserCreate, background_tasks: BackgroundTasks, db: Session = Depends(get_db)):
    db_user, token = accounts.register(db, background_tasks, user)
    if db_user.is_admin:
        message = "Admin account created successfully"
    else:
        message = "User registered successfully. Please check your email to verify your account."
    return {
        "message": message,
        "user": db_user,
        "requires_verification": not db_user.email_verified,
        "token": token,
    }


@app.post("/auth/login", response_model=schemas.TokenResponse, dependencies=[Depends(ratelimit.limit_login)])
def login(payload: schemas.LoginRequest, db: Session = Depends(get_db)):
    user, token = auth.login(db, payload.email, payload.password)
    return {"message": "Login successful", "user": user, "token": token}


@app.get("/auth/verify-email", response_model=schemas.TokenResponse)
def verify_email(id: int = Query(...), token: str = Query(...), db: Session = Depends(get_db)):
    user, session_token, newly_verified = verification.verify(db, id, token)
    message = "Email verified successfully! You can now login." if newly_verified else "Email already verified"
    return {"message": message, "user": user, "token": session_token}


@app.post("/auth/resend-verification", response_model=schemas.MessageResponse)
def resend_verification(payload: schemas.ResendVerificationRequest, background_tasks: BackgroundTasks,
                        db: Session = Depends(get_db)):
    verification.resend(db, background_tasks, payload.email)
    return {"message": "Verification email sent successfully"}


@app.get("/auth/profile", response_model=schemas.ProfileResponse)
def profile(current_user: models.User = Depends(auth.get_current_user)):
    return {"user": current_user}


@app.post("/auth/logout", response_model=schemas.MessageResponse)
def logout(current_user: models.User = Depends(auth.get_current_user),
           token: str = Depends(auth.oauth2_scheme), db: Session = Depends(get_db)):
    auth.logout(db, token)
    return {"message": "Logged out successfully"}


# TASKS

@app.get("/tasks", response_model=schemas.TaskPage)
def get_tasks(search: Optional[str] = None, status: Optional[schemas.TaskStatus] = None,
              due_date_from: Optional[date] = None, due_date_to: Optional[date] = None,
              tags: Optional[List[str]] = Query(None),
              sort_by: str = "created_at", sort_order: str = "desc",
              page: int = Query(1, ge=1), per_page: Optional[int] = None,
              current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    tasks, pagination = crud.get_tasks_filtered(
        db, current_user, search=search, status=status, due_date_from=due_date_from,
        due_date_to=due_date_to, tags=tags, sort_by=sort_by, sort_order=sort_order,
        page=page, per_page=per_page,
    )
    return {"items": tasks, "pagination": pagination}


@app.post("/tasks", response_model=schemas.TaskResponse, status_code=status.HTTP_201_CREATED)
def create_task(task: schemas.TaskCreate, current_user: models.User = Depends(auth.get_current_user),
                db: Session = Depends(get_db)):
    created_task = crud.create_task(db, current_user, task)
    return {"message": "Task created successfully", "task": created_task}


@app.get("/tasks/{task_id}", response_model=schemas.TaskResponse)
def get_task_details(
    task_id: int = Path(...),
    current_user: models.User = Depends(auth.get_current_user),
    db: Session = Depends(get_db)
):
    return {"task": crud.get_task_for(db, current_user, task_id)}


@app.api_route("/tasks/{task_id}", methods=["PUT", "PATCH"], response_model=schemas.TaskResponse)
def update_task(task_id: int, task_update: schemas.TaskUpdate,
                current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    updated_task = crud.update_task(db, current_user, task_id, task_update)
    return {"message": "Task updated successfully", "task": updated_task}


@app.delete("/tasks/{task_id}", response_model=schemas.MessageResponse)
def delete_task(task_id: int, current_user: models.User = Depends(auth.get_current_user),
                db: Session = Depends(get_db)):
    crud.delete_task(db, current_user, task_id)
    return {"message": "Task deleted successfully"}


# ADMIN

@app.get("/admin/dashboard", response_model=schemas.DashboardResponse)
def admin_dashboard(current_user: models.User = Depends(auth.get_current_admin), db: Session = Depends(get_db)):
    return crud.dashboard_statistics(db)


@app.get("/admin/users", response_model=schemas.UserPage)
def admin_users(search: Optional[str] = None, role: Optional[str] = None, verified: Optional[str] = None,
                sort_by: str = "created_at", sort_order: str = "desc",
                page: int = Query(1, ge=1), per_page: Optional[int] = None,
                current_user: models.User = Depends(auth.get_current_admin), db: Session = Depends(get_db)):
    rows, pagination = crud.get_users_filtered(
        db, search=search, role=role, verified=verified, sort_by=sort_by,
        sort_order=sort_order, page=page, per_page=per_page,
    )
    items = [
        schemas.UserWithTaskCount.model_validate(user).model_copy(update={"tasks_count": count})
        for user, count in rows
    ]
    return {"items": items, "pagination": pagination}


@app.get("/admin/tasks", response_model=schemas.TaskPage)
def admin_tasks(search: Optional[str] = None, status: Optional[schemas.TaskStatus] = None,
                user_id: Optional[int] = None,
                due_date_from: Optional[date] = None, due_date_to: Optional[date] = None,
                tags: Optional[List[str]] = Query(None), due_date_filter: Optional[str] = None,
                sort_by: str = "created_at", sort_order: str = "desc",
                page: int = Query(1, ge=1), per_page: Optional[int] = None,
                current_user: models.User = Depends(auth.get_current_admin), db: Session = Depends(get_db)):
    tasks, pagination = crud.get_tasks_filtered(
        db, current_user, search=search, search_tags=True, status=status, user_id=user_id,
        due_date_from=due_date_from, due_date_to=due_date_to, tags=tags,
        due_date_filter=due_date_filter, sort_by=sort_by, sort_order=sort_order,
        page=page, per_page=per_page,
    )
    return {"items": tasks, "pagination": pagination}
