"""HTTP client for the TaskHub API.

``TaskHubSession`` owns the state a front end keeps between requests: the
bearer token and the signed-in user. It is created when the client starts,
filled in by ``login``/``verify_email``, emptied by ``logout``, and emptied
again whenever the server answers 401 (expired or revoked token).
"""
import logging
from typing import Any, Dict, Iterable, Optional

import httpx

logger = logging.getLogger(__name__)


class SessionError(Exception):
    def __init__(self, status_code: int, message: str, payload: Optional[dict] = None):
        super().__init__(f"{status_code}: {message}")
        self.status_code = status_code
        self.message = message
        self.payload = payload or {}

    @property
    def requires_verification(self) -> bool:
        return bool(self.payload.get("requires_verification"))


class TaskHubSession:
    def __init__(self, base_url: str = "http://localhost:8000", http: Optional[httpx.Client] = None,
                 token: Optional[str] = None):
        self.http = http or httpx.Client(base_url=base_url)
        self.token = token
        self.user: Optional[dict] = None

    @property
    def is_authenticated(self) -> bool:
        return self.token is not None

    @property
    def is_admin(self) -> bool:
        return bool(self.user) and self.user.get("role") == "admin"

    def close(self):
        self.http.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def _clear(self):
        self.token = None
        self.user = None

    def _request(self, method: str, url: str, **kwargs) -> Dict[str, Any]:
        headers = kwargs.pop("headers", {})
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        response = self.http.request(method, url, headers=headers, **kwargs)
        if response.status_code == 401 and self.token:
            logger.info("Session token rejected, clearing session")
            self._clear()
        if response.is_error:
            try:
                payload = response.json()
            except ValueError:
                payload = {}
            raise SessionError(response.status_code, payload.get("message", response.reason_phrase), payload)
        return response.json()

    def _start(self, data: Dict[str, Any]) -> Dict[str, Any]:
        if data.get("token"):
            self.token = data["token"]
            self.user = data.get("user")
        return data

    # auth

    def signup(self, name: str, email: str, password: str, password_confirmation: Optional[str] = None):
        body = {"name": name, "email": email, "password": password}
        if password_confirmation is not None:
            body["password_confirmation"] = password_confirmation
        return self._start(self._request("POST", "/auth/signup", json=body))

    def login(self, email: str, password: str):
        return self._start(self._request("POST", "/auth/login", json={"email": email, "password": password}))

    def verify_email(self, user_id: int, token: str):
        return self._start(self._request("GET", "/auth/verify-email", params={"id": user_id, "token": token}))

    def resend_verification(self, email: str):
        return self._request("POST", "/auth/resend-verification", json={"email": email})

    def profile(self):
        data = self._request("GET", "/auth/profile")
        self.user = data["user"]
        return self.user

    def logout(self):
        try:
            return self._request("POST", "/auth/logout")
        finally:
            self._clear()

    # tasks

    def list_tasks(self, tags: Iterable[str] = (), **filters):
        params = {k: v for k, v in filters.items() if v is not None}
        if tags:
            params["tags"] = list(tags)
        return self._request("GET", "/tasks", params=params)

    def create_task(self, title: str, **fields):
        return self._request("POST", "/tasks", json={"title": title, **fields})["task"]

    def get_task(self, task_id: int):
        return self._request("GET", f"/tasks/{task_id}")["task"]

    def update_task(self, task_id: int, **fields):
        return self._request("PUT", f"/tasks/{task_id}", json=fields)["task"]

    def delete_task(self, task_id: int):
        return self._request("DELETE", f"/tasks/{task_id}")

    # admin

    def dashboard(self):
        return self._request("GET", "/admin/dashboard")

    def list_users(self, **filters):
        return self._request("GET", "/admin/users", params={k: v for k, v in filters.items() if v is not None})

    def list_all_tasks(self, tags: Iterable[str] = (), **filters):
        params = {k: v for k, v in filters.items() if v is not None}
        if tags:
            params["tags"] = list(tags)
        return self._request("GET", "/admin/tasks", params=params)
