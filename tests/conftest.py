"""Pytest configuration and fixtures."""

import json
import threading
import time

import pytest

import drive_watch


class FakeRequest:
    """Mimics a googleapiclient HttpRequest."""

    def __init__(self, fn):
        self._fn = fn

    def execute(self):
        return self._fn()


class FakeDrive:
    """
    In-memory stand-in for the Drive v3 files() resource.

    Uploads become visible to list() only once create() has finished.
    """

    def __init__(self, existing=None, page_size=100):
        self.remote = [dict(f) for f in (existing or [])]
        self.page_size = page_size
        self.created = []
        self.list_calls = []
        self.fail_list = False
        self.fail_create_names = set()
        self.omit_id = False
        self.create_delay = 0.0
        self._next_id = 1
        self._lock = threading.Lock()

    # service.files()
    def files(self):
        return self

    def list(self, q=None, spaces=None, fields=None, pageToken=None):
        def run():
            with self._lock:
                self.list_calls.append(q)
                if self.fail_list:
                    raise RuntimeError("listing unavailable")
                start = int(pageToken or 0)
                page = self.remote[start:start + self.page_size]
                result = {'files': [dict(f) for f in page]}
                if start + self.page_size < len(self.remote):
                    result['nextPageToken'] = str(start + self.page_size)
                return result
        return FakeRequest(run)

    def create(self, body=None, media_body=None, fields=None):
        def run():
            with self._lock:
                self.created.append(body)
            if self.create_delay:
                time.sleep(self.create_delay)
            if body['name'] in self.fail_create_names:
                raise RuntimeError("quota exceeded")
            with self._lock:
                file_id = f"id-{self._next_id}"
                self._next_id += 1
                self.remote.append({'id': file_id, 'name': body['name']})
            return {} if self.omit_id else {'id': file_id}
        return FakeRequest(run)


class FakeObserver:
    """Records schedule/start/stop without starting a thread."""

    def __init__(self):
        self.scheduled = []
        self.started = False
        self.stopped = False

    def schedule(self, handler, path, recursive=False):
        self.scheduled.append((handler, path, recursive))

    def start(self):
        self.started = True

    def stop(self):
        self.stopped = True

    def join(self, timeout=None):
        pass


@pytest.fixture
def fake_drive():
    return FakeDrive()


@pytest.fixture
def fake_observer_cls():
    return FakeObserver


@pytest.fixture
def fake_flow(monkeypatch):
    """Replace google_auth_oauthlib Flow with a recording fake."""

    class FakeFlow:
        instances = []
        token = {
            'access_token': 'ya29.new-access',
            'refresh_token': '1//new-refresh',
            'expires_at': 1767225600,
            'scope': ['https://www.googleapis.com/auth/drive.file'],
            'token_type': 'Bearer',
        }
        error = None

        def __init__(self, client_config, scopes, redirect_uri):
            self.client_config = client_config
            self.scopes = scopes
            self.redirect_uri = redirect_uri
            self.auth_kwargs = None
            self.codes = []

        @classmethod
        def from_client_config(cls, client_config, scopes, redirect_uri=None):
            flow = cls(client_config, scopes, redirect_uri)
            cls.instances.append(flow)
            return flow

        def authorization_url(self, **kwargs):
            self.auth_kwargs = kwargs
            return 'https://accounts.example.com/o/oauth2/auth?client_id=abc', 'state-1'

        def fetch_token(self, code=None):
            self.codes.append(code)
            if self.error is not None:
                raise self.error
            return dict(self.token)

    monkeypatch.setattr(drive_watch, 'Flow', FakeFlow)
    return FakeFlow


@pytest.fixture
def stored_token(tmp_path):
    """Write a valid token file and return its path."""
    path = tmp_path / "token.json"
    path.write_text(json.dumps({
        'access_token': 'ya29.stored-access',
        'refresh_token': '1//stored-refresh',
        'expiry': '2026-01-01T00:00:00Z',
        'scope': 'https://www.googleapis.com/auth/drive.file',
        'token_type': 'Bearer',
    }))
    return path
