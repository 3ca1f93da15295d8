"""Shared fixtures: settings isolated from the environment and a scripted API."""

import inspect
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest
from pydantic_settings import SettingsConfigDict

from calwatch.config import Settings
from calwatch.services.base import ApiResponse, BaseRequestIssuer


class TestSettings(Settings):
    """Test-specific settings that don't read from .env files."""
    model_config = SettingsConfigDict(
        env_file=None,  # Don't read from .env files
        case_sensitive=False,
        extra="ignore",
        secrets_dir=None  # Don't read from secrets directory
    )


def make_settings(tmp_path, **overrides):
    values = dict(
        data_dir=str(tmp_path),
        database_url=f'sqlite:///{tmp_path}/test.db',
        webhook_address='https://hooks.example.com/webhooks/google',
    )
    values.update(overrides)
    return TestSettings(**values)


@dataclass
class RecordedCall:
    method: str
    path: str
    params: Dict[str, Any] = field(default_factory=dict)
    json: Optional[Dict[str, Any]] = None


class FakeRequestIssuer(BaseRequestIssuer):
    """Answers requests from queued responses or handlers, recording every call.

    A queued item that is an exception is raised instead of returned.
    """

    def __init__(self):
        self.calls: List[RecordedCall] = []
        self.queued: Dict[Tuple[str, str], List[Any]] = {}
        self.handlers: Dict[Tuple[str, str], Callable] = {}
        self.closed = False

    def queue(self, method: str, path: str, *responses) -> None:
        self.queued.setdefault((method, path), []).extend(responses)

    def route(self, method: str, path: str, handler: Callable) -> None:
        """Register ``handler(params, json)`` returning an ApiResponse."""
        self.handlers[(method, path)] = handler

    def calls_to(self, method: str, path: str) -> List[RecordedCall]:
        return [call for call in self.calls if call.method == method and call.path == path]

    async def request(self, method, path, params=None, json=None, headers=None):
        call = RecordedCall(method, path, dict(params or {}), dict(json) if json is not None else None)
        self.calls.append(call)
        key = (method, path)
        if key in self.handlers:
            outcome = self.handlers[key](call.params, call.json)
            if inspect.isawaitable(outcome):
                outcome = await outcome
        elif self.queued.get(key):
            outcome = self.queued[key].pop(0)
        else:
            raise AssertionError(f"Unexpected request {method} {path}")
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def close(self):
        self.closed = True


def ok(payload=None) -> ApiResponse:
    return ApiResponse(status_code=200, payload=payload if payload is not None else {})


def error(status_code: int, message: str = "failure", reason: Optional[str] = None) -> ApiResponse:
    detail = {'message': message}
    if reason:
        detail['reason'] = reason
    return ApiResponse(
        status_code=status_code,
        payload={'error': {'code': status_code, 'message': message, 'errors': [detail]}},
    )


def event_record(event_id, created='2024-03-01T10:00:00.000Z', updated=None, status='confirmed', **extra):
    record = {
        'id': event_id,
        'status': status,
        'summary': f'Event {event_id}',
        'created': created,
        'updated': updated or created,
        'start': {'dateTime': '2024-03-05T09:00:00Z'},
        'end': {'dateTime': '2024-03-05T10:00:00Z'},
    }
    record.update(extra)
    return record


@pytest.fixture
def issuer():
    return FakeRequestIssuer()


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)
