"""
HTTP client for the SpendSense API and the advisor chat built on it.

SpendSenseClient wraps a requests.Session; anything with the same
get/post/put/delete signature (a FastAPI TestClient, for instance) can be
passed in instead.
"""
import logging
from dataclasses import dataclass, field
from typing import List, Literal, Optional

import requests

logger = logging.getLogger("spendsense.client")

WELCOME_MESSAGE = "Welcome! Ask me anything about your finances."
ADVISOR_ERROR_MESSAGE = "Sorry, I couldn't generate a response right now. Please try again later."


class ApiError(Exception):
    def __init__(self, status_code: int, message: str):
        super().__init__(f"{status_code}: {message}")
        self.status_code = status_code
        self.message = message


class SpendSenseClient:
    def __init__(self, base_url: str = "http://localhost:8000", session=None, timeout: int = 30):
        self.base_url = base_url.rstrip("/")
        self.session = session if session is not None else requests.Session()
        self.timeout = timeout
        self.token: Optional[str] = None

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.token}"} if self.token else {}

    def _request(self, method: str, path: str, **kwargs):
        url = f"{self.base_url}{path}"
        response = getattr(self.session, method)(url, headers=self._headers(), timeout=self.timeout, **kwargs)
        if response.status_code >= 400:
            try:
                payload = response.json()
            except ValueError:
                payload = {}
            message = payload.get("error") or payload.get("detail") or payload.get("errors") or "Request failed"
            raise ApiError(response.status_code, str(message))
        return response.json()

    # auth
    def register(self, email: str, password: str, display_name: Optional[str] = None, income: float = 0) -> str:
        data = self._request("post", "/auth/register", json={
            "email": email, "password": password, "display_name": display_name, "income": income,
        })
        self.token = data["access_token"]
        return self.token

    def login(self, email: str, password: str) -> str:
        data = self._request("post", "/auth/login", data={"username": email, "password": password})
        self.token = data["access_token"]
        return self.token

    def logout(self) -> None:
        if self.token:
            self._request("post", "/auth/logout")
        self.token = None

    # data
    def dashboard(self) -> dict:
        return self._request("get", "/dashboard")

    def expenses(self) -> List[dict]:
        return self._request("get", "/expenses")

    def add_expense(self, name: str, amount: float, category: str = "Needs") -> dict:
        return self._request("post", "/expenses", json={"name": name, "amount": amount, "category": category})

    def update_expense(self, expense_id: str, name: str, amount: float, category: str) -> dict:
        return self._request("put", f"/expenses/{expense_id}", json={"name": name, "amount": amount, "category": category})

    def delete_expense(self, expense_id: str) -> None:
        self._request("delete", f"/expenses/{expense_id}")

    def set_income(self, income: float) -> dict:
        return self._request("put", "/profile/income", json={"income": income})

    def ask_advisor(self, query: str, income: Optional[float] = None, expenses: Optional[List[dict]] = None) -> str:
        body = {"query": query}
        if not self.token:
            body.update({"income": income or 0, "expenses": expenses or []})
        return self._request("post", "/api/financial-advisor", json=body)["answer"]


@dataclass
class Message:
    sender: Literal["user", "ai", "error"]
    text: str


@dataclass
class AdvisorChat:
    client: SpendSenseClient
    messages: List[Message] = field(default_factory=lambda: [Message("ai", WELCOME_MESSAGE)])
    # posted along with each question when the client has no session
    income: Optional[float] = None
    expenses: Optional[List[dict]] = None
    pending: bool = False
    draft: str = ""

    def send(self, text: str) -> Optional[Message]:
        """
        Post a question and append the reply to the transcript.

        Returns the message that was appended (the answer or an error bubble),
        or None when nothing was sent: an empty question, or one while another
        is still pending.
        """
        query = text.strip()
        if not query or self.pending:
            return None

        self.messages.append(Message("user", query))
        self.draft = ""
        self.pending = True
        try:
            reply = Message("ai", self.client.ask_advisor(query, self.income, self.expenses))
        except (ApiError, requests.RequestException) as e:
            logger.warning("Advisor request failed: %s", e)
            reply = Message("error", ADVISOR_ERROR_MESSAGE)
            self.draft = query
        finally:
            self.pending = False
        self.messages.append(reply)
        return reply
