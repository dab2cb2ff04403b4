"""WebUntis JSON-RPC client producing pseudonymised ScheduleSnapshots."""

from __future__ import annotations

import hashlib
import itertools
import logging
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError
from tenacity import retry, stop_after_attempt, wait_exponential

from .config import Settings
from .errors import FetchError
from .models import Lesson, LessonCode, ScheduleSnapshot

logger = logging.getLogger(__name__)

RETRY_STATUS = frozenset({408, 429, 500, 502, 503, 504})
CLIENT_NAME = "school-mining-scraper"
ELEMENT_TYPE_CLASS = 1
ELEMENT_FIELDS = ["id", "name", "longname"]


class RpcError(Exception):
    """The server answered with a JSON-RPC error object."""

    def __init__(self, method: str, code: Any, message: str) -> None:
        super().__init__(f"{method} failed ({code}): {message}")
        self.method = method
        self.code = code


def pseudonymise(secret: str, name: str) -> str:
    """Hash a teacher name with the shared secret into a stable pseudonym."""
    hasher = hashlib.sha256()
    hasher.update(secret.encode("utf-8"))
    hasher.update(name.encode("utf-8"))
    return hasher.hexdigest()


def untis_date(day: date) -> int:
    """Encode a date the way the API expects it, e.g. 20231019."""
    return day.year * 10000 + day.month * 100 + day.day


def _names(elements: Optional[List[Dict[str, Any]]]) -> List[str]:
    return [str(e.get("name", "")) for e in elements or []]


def lesson_from_api(raw: Dict[str, Any], secret: str) -> Lesson:
    """Convert one ``getTimetable`` entry into a Lesson.

    Only the first subject is kept as the topic; ``"None"`` when absent.
    """
    code = raw.get("code")
    subjects = _names(raw.get("su"))
    return Lesson(
        classes=_names(raw.get("kl")),
        teachers=[pseudonymise(secret, name) for name in _names(raw.get("te"))],
        rooms=_names(raw.get("ro")),
        lesson_code=LessonCode(code) if code in ("irregular", "cancelled") else LessonCode.REGULAR,
        description=raw.get("lstext") or "",
        topic=subjects[0] if subjects else "None",
        sub_text=raw.get("substText"),
        date=raw.get("date"),
        start_time=raw.get("startTime"),
        end_time=raw.get("endTime"),
    )


def _raise_for_retryable_status(resp: httpx.Response) -> None:
    if resp.status_code in RETRY_STATUS:
        raise httpx.HTTPStatusError(
            f"Retryable HTTP {resp.status_code} for {resp.request.url}",
            request=resp.request,
            response=resp,
        )


def _retry_decorator(settings: Settings):
    return retry(
        stop=stop_after_attempt(settings.max_attempts),
        wait=wait_exponential(
            multiplier=settings.backoff_multiplier,
            min=settings.backoff_min,
            max=settings.backoff_max,
        ),
        reraise=True,
    )


class UntisClient:
    """Minimal session-based client for the WebUntis JSON-RPC endpoint."""

    def __init__(
        self,
        settings: Settings,
        *,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.settings = settings
        self.url = f"https://{settings.server}/WebUntis/jsonrpc.do"
        self._ids = itertools.count(1)
        self._http = httpx.Client(
            timeout=settings.timeout_total,
            transport=transport,
            params={"school": settings.school},
            headers={"user-agent": settings.user_agent, "accept": "application/json"},
        )
        self.session_id: Optional[str] = None

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "UntisClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def call(self, method: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """Perform one JSON-RPC call and return its ``result``.

        Raises:
            RpcError: If the server reports an error object.
            httpx.HTTPError: On transport failure after retries.
        """
        body = {
            "id": str(next(self._ids)),
            "method": method,
            "params": params or {},
            "jsonrpc": "2.0",
        }

        @_retry_decorator(self.settings)
        def _do_request() -> httpx.Response:
            resp = self._http.post(self.url, json=body)
            _raise_for_retryable_status(resp)
            return resp

        resp = _do_request()
        resp.raise_for_status()
        try:
            payload = resp.json()
        except ValueError as exc:
            raise RpcError(method, None, f"invalid JSON response: {exc}") from exc
        if not isinstance(payload, dict):
            raise RpcError(method, None, "response is not a JSON-RPC object")
        if payload.get("error"):
            err = payload["error"]
            if not isinstance(err, dict):
                err = {"message": str(err)}
            raise RpcError(method, err.get("code"), err.get("message", ""))
        return payload.get("result")

    def login(self) -> None:
        result = self.call(
            "authenticate",
            {
                "user": self.settings.username,
                "password": self.settings.password,
                "client": CLIENT_NAME,
            },
        )
        self.session_id = result["sessionId"]
        self._http.cookies.set("JSESSIONID", self.session_id, domain=self.settings.server)
        logger.info("Logged in to %s as %s", self.settings.server, self.settings.username)

    def logout(self) -> None:
        if self.session_id is None:
            return
        try:
            self.call("logout")
        except (RpcError, httpx.HTTPError) as exc:
            logger.warning("Logout failed: %s", exc)
        self.session_id = None

    def classes(self) -> List[Dict[str, Any]]:
        return list(self.call("getKlassen") or [])

    def timetable(self, class_id: int, day: date) -> List[Dict[str, Any]]:
        options = {
            "element": {"id": class_id, "type": ELEMENT_TYPE_CLASS},
            "startDate": untis_date(day),
            "endDate": untis_date(day),
            "showLsText": True,
            "showSubstText": True,
            "klasseFields": ELEMENT_FIELDS,
            "teacherFields": ELEMENT_FIELDS,
            "subjectFields": ELEMENT_FIELDS,
            "roomFields": ELEMENT_FIELDS,
        }
        return list(self.call("getTimetable", {"options": options}) or [])


def create_snapshot(client: UntisClient, secret: str, day: Optional[date] = None) -> ScheduleSnapshot:
    """Fetch today's timetable of every class into one snapshot.

    A class whose timetable cannot be fetched is logged and skipped.

    Raises:
        FetchError: If the class list cannot be fetched or every class fails.
    """
    day = day or date.today()
    fetched_at = datetime.now(timezone.utc)

    try:
        classes = client.classes()
    except (RpcError, httpx.HTTPError) as exc:
        raise FetchError(f"Could not list classes: {exc}") from exc

    lessons: List[Lesson] = []
    failed = 0
    for klass in classes:
        logger.debug("Loading timetable for class %s", klass.get("name"))
        try:
            entries = client.timetable(klass["id"], day)
        except (RpcError, httpx.HTTPError) as exc:
            failed += 1
            logger.error("Timetable for class %s failed: %s", klass.get("name"), exc)
            continue
        lessons.extend(lesson_from_api(entry, secret) for entry in entries)

    if classes and failed == len(classes):
        raise FetchError(f"Timetable failed for all {failed} classes")

    logger.info("Fetched %d lessons for %d classes", len(lessons), len(classes) - failed)
    return ScheduleSnapshot(
        school=client.settings.school,
        server=client.settings.server,
        fetched_at=fetched_at,
        lessons=lessons,
    )


class UntisFetcher:
    """Fetcher boundary: call with no arguments to get a ScheduleSnapshot."""

    def __init__(
        self, settings: Settings, *, transport: Optional[httpx.BaseTransport] = None
    ) -> None:
        self.settings = settings
        self.transport = transport

    def __call__(self) -> ScheduleSnapshot:
        with UntisClient(self.settings, transport=self.transport) as client:
            try:
                client.login()
            except (RpcError, httpx.HTTPError, KeyError, TypeError, AttributeError) as exc:
                raise FetchError(f"Login failed: {exc}") from exc
            try:
                return create_snapshot(client, self.settings.secret)
            except (ValidationError, KeyError, TypeError, AttributeError) as exc:
                raise FetchError(f"Unexpected timetable data: {exc}") from exc
            finally:
                client.logout()
