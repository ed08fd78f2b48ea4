import os
import json
import time
import threading
from enum import Enum
from contextlib import contextmanager
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional
from concurrent.futures import Future, ThreadPoolExecutor
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow
from googleapiclient.discovery import build
from googleapiclient.http import MediaFileUpload
from watchdog.observers import Observer
from watchdog.events import FileSystemEventHandler

# --- CONFIGURATION ---
SCOPES = ['https://www.googleapis.com/auth/drive.file']
TOKEN_FILE = 'token.json'
AUTH_URI = 'https://accounts.google.com/o/oauth2/auth'
TOKEN_URI = 'https://oauth2.googleapis.com/token'
MAX_WORKERS = 10  # Max parallel uploads (tune to avoid rate limits)


class DriveWatchError(Exception):
    """Base class for all errors raised by drive_watch."""


class AuthError(DriveWatchError):
    """Authorization code exchange failed."""


class TokenFileError(DriveWatchError):
    """Stored token file exists but cannot be parsed."""


class WatchPathError(DriveWatchError):
    """Watch path is missing or not a directory."""


class ListingError(DriveWatchError):
    """Listing the remote folder failed."""


class UploadError(DriveWatchError):
    """Creating the remote file failed."""


def _parse_expiry(value: str) -> datetime:
    """Parse a stored ISO-8601 expiry into the naive UTC datetime google-auth expects."""
    if not isinstance(value, str):
        raise TypeError(f"expiry must be an ISO-8601 string, got {type(value).__name__}")
    expiry = datetime.fromisoformat(value.rstrip('Z'))
    if expiry.tzinfo is not None:
        expiry = expiry.astimezone(timezone.utc).replace(tzinfo=None)
    return expiry


@dataclass
class Credential:
    """OAuth2 token record persisted in the token file."""
    access_token: str
    refresh_token: Optional[str] = None
    expiry: Optional[str] = None  # ISO-8601 UTC, e.g. 2026-01-01T00:00:00Z
    scope: str = ''
    token_type: str = 'Bearer'

    @classmethod
    def from_dict(cls, data: Dict) -> 'Credential':
        """
        Build a credential from a stored record.

        Raises:
            KeyError, TypeError, ValueError: the record is malformed
        """
        access_token = data['access_token']
        if not isinstance(access_token, str):
            raise TypeError("access_token must be a string")

        scope = data.get('scope') or ''
        if isinstance(scope, (list, tuple)):
            scope = ' '.join(scope)
        if not isinstance(scope, str):
            raise TypeError("scope must be a string or list of strings")

        expiry = data.get('expiry')
        if expiry is not None:
            _parse_expiry(expiry)

        return cls(
            access_token=access_token,
            refresh_token=data.get('refresh_token'),
            expiry=expiry,
            scope=scope,
            token_type=data.get('token_type') or 'Bearer',
        )

    @classmethod
    def from_token_response(cls, token: Dict) -> 'Credential':
        """
        Build a credential from the provider's token endpoint response.

        Args:
            token: Response dict (access_token, refresh_token, expires_at or
                expires_in, scope, token_type)
        """
        expiry = None
        if token.get('expires_at'):
            expires = datetime.fromtimestamp(float(token['expires_at']), tz=timezone.utc)
            expiry = expires.strftime('%Y-%m-%dT%H:%M:%SZ')
        elif token.get('expires_in'):
            expires = datetime.fromtimestamp(time.time() + float(token['expires_in']), tz=timezone.utc)
            expiry = expires.strftime('%Y-%m-%dT%H:%M:%SZ')

        scope = token.get('scope') or ''
        if isinstance(scope, (list, tuple)):
            scope = ' '.join(scope)

        return cls(
            access_token=token['access_token'],
            refresh_token=token.get('refresh_token'),
            expiry=expiry,
            scope=scope,
            token_type=token.get('token_type') or 'Bearer',
        )

    def to_dict(self) -> Dict:
        return asdict(self)

    def to_google_credentials(self, client_id: str, client_secret: str) -> Credentials:
        """Install this record on a google-auth Credentials object as-is."""
        expiry = _parse_expiry(self.expiry) if self.expiry else None
        return Credentials(
            token=self.access_token,
            refresh_token=self.refresh_token,
            token_uri=TOKEN_URI,
            client_id=client_id,
            client_secret=client_secret,
            scopes=self.scope.split() or None,
            expiry=expiry,
        )


@dataclass(frozen=True)
class WatchEvent:
    """A file that appeared in the watched directory."""
    file_path: str


@dataclass(frozen=True)
class RemoteFileRecord:
    name: str
    id: str


@dataclass(frozen=True)
class UploadRequest:
    name: str
    parent_folder_id: str
    file_path: str

    @property
    def metadata(self) -> Dict:
        return {'name': self.name, 'parents': [self.parent_folder_id]}


class UploadOutcome(Enum):
    UPLOADED = 'uploaded'
    SKIPPED = 'skipped'
    FAILED = 'failed'


@dataclass
class UploadResult:
    """Outcome of processing one watch event."""
    event: WatchEvent
    outcome: UploadOutcome
    file_id: Optional[str] = None
    error: Optional[DriveWatchError] = None

    @property
    def name(self) -> str:
        return os.path.basename(self.event.file_path)


class TokenStore:
    """Reads and writes the persisted credential file."""

    def __init__(self, path: str = TOKEN_FILE):
        self.path = path

    @property
    def exists(self) -> bool:
        return os.path.exists(self.path)

    def read(self) -> Optional[Credential]:
        """
        Load the stored credential.

        Returns:
            Credential, or None if the file does not exist or is unreadable

        Raises:
            TokenFileError: the file was read but does not hold a credential
        """
        try:
            with open(self.path, 'r') as f:
                raw = f.read()
        except OSError:
            return None

        try:
            data = json.loads(raw)
            return Credential.from_dict(data)
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise TokenFileError(
                f"Token file is corrupted: {self.path} ({e})\n"
                "Delete it and run again to re-authorize."
            ) from e

    def write(self, credential: Credential):
        """Save the credential, replacing any previous one."""
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, 'w') as f:
            json.dump(credential.to_dict(), f, indent=2)
        os.replace(tmp_path, self.path)


class AuthState(Enum):
    NO_TOKEN = 'no_token'
    AWAITING_CODE = 'awaiting_code'
    EXCHANGING = 'exchanging'
    AUTHORIZED = 'authorized'


class AuthManager:
    """Produces an authorized credentials handle, prompting for a code only when needed."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        token_store: TokenStore,
        prompt: Callable[[str], str] = input,
    ):
        """
        Args:
            client_id: OAuth client ID
            client_secret: OAuth client secret
            redirect_uri: Redirect URI registered for the client
            token_store: Where the credential is persisted
            prompt: Reads one line of operator input
        """
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.token_store = token_store
        self.prompt = prompt
        self.state = AuthState.NO_TOKEN

    def _client_config(self) -> Dict:
        return {
            'installed': {
                'client_id': self.client_id,
                'client_secret': self.client_secret,
                'auth_uri': AUTH_URI,
                'token_uri': TOKEN_URI,
                'redirect_uris': [self.redirect_uri],
            }
        }

    def authorize(self) -> Credentials:
        """
        Get stored credentials or run the interactive code exchange.

        Returns:
            Authorized google-auth Credentials

        Raises:
            TokenFileError: stored token is corrupted
            AuthError: code exchange failed
        """
        credential = self.token_store.read()
        if credential is None:
            credential = self._exchange_code()
            self.token_store.write(credential)
            print(f"✅ Token saved to {self.token_store.path}")

        self.state = AuthState.AUTHORIZED
        return credential.to_google_credentials(self.client_id, self.client_secret)

    def _exchange_code(self) -> Credential:
        flow = Flow.from_client_config(
            self._client_config(),
            scopes=SCOPES,
            redirect_uri=self.redirect_uri,
        )
        auth_url, _ = flow.authorization_url(access_type='offline')

        self.state = AuthState.AWAITING_CODE
        print("🔐 Authorize this app by visiting this URL:")
        print(f"\n{auth_url}\n")
        code = self.prompt("Enter the code from that page here: ").strip()
        if not code:
            self.state = AuthState.NO_TOKEN
            raise AuthError("No authorization code entered")

        self.state = AuthState.EXCHANGING
        try:
            token = flow.fetch_token(code=code)
            return Credential.from_token_response(token)
        except Exception as e:
            self.state = AuthState.NO_TOKEN
            raise AuthError(f"Failed to exchange authorization code: {e}") from e


class _WatchHandler(FileSystemEventHandler):
    """Turns watchdog events into WatchEvents for new files."""

    def __init__(self, watcher: 'DirectoryWatcher'):
        self.watcher = watcher

    def on_created(self, event):
        if not event.is_directory:
            self.watcher._emit(event.src_path)

    def on_moved(self, event):
        # Renamed into (or within) the directory; counts as a new file name
        if not event.is_directory:
            self.watcher._emit(event.dest_path)


class DirectoryWatcher:
    """Watches a single directory (non-recursive) for new files."""

    def __init__(self, path: str, upload_existing: bool = True, observer_factory=None):
        """
        Args:
            path: Directory to watch
            upload_existing: Emit events for files already present at start
            observer_factory: watchdog observer class (default: Observer)
        """
        self.path = os.path.realpath(path)
        self.upload_existing = upload_existing
        self.observer_factory = observer_factory
        self.observer = None
        self._callback: Optional[Callable[[WatchEvent], None]] = None

    @staticmethod
    def is_ignored(file_path: str) -> bool:
        """Dot-files are never uploaded."""
        return os.path.basename(file_path).startswith('.')

    def _emit(self, file_path: str):
        if os.path.realpath(os.path.dirname(os.path.abspath(file_path))) != self.path:
            return
        if self.is_ignored(file_path):
            return
        self._callback(WatchEvent(file_path=file_path))

    def _scan_existing(self):
        for entry in sorted(os.scandir(self.path), key=lambda e: e.name):
            if entry.is_file():
                self._emit(entry.path)

    def start(self, callback: Callable[[WatchEvent], None]):
        """Start observing; callback runs once per new file."""
        if not os.path.isdir(self.path):
            raise WatchPathError(f"Watch path is not a directory: {self.path}")

        self._callback = callback
        self.observer = (self.observer_factory or Observer)()
        self.observer.schedule(_WatchHandler(self), self.path, recursive=False)
        self.observer.start()

        # Scan after the observer is live so no file falls between the two
        if self.upload_existing:
            self._scan_existing()

    def stop(self):
        if self.observer is not None:
            self.observer.stop()
            self.observer.join()
            self.observer = None


class UploadPipeline:
    """Uploads watched files to a Drive folder unless the name already exists there."""

    def __init__(
        self,
        folder_id: str,
        service_factory: Callable,
        max_workers: int = MAX_WORKERS,
        on_result: Optional[Callable[[UploadResult], None]] = None,
    ):
        """
        Args:
            folder_id: Destination Drive folder ID
            service_factory: Returns a Drive v3 service resource
            max_workers: Max concurrent uploads
            on_result: Called with each UploadResult
        """
        self.folder_id = folder_id
        self.service_factory = service_factory
        self.on_result = on_result
        self._executor = ThreadPoolExecutor(max_workers=max_workers)
        self._thread_local = threading.local()  # Thread-local service objects
        self._name_locks: Dict[str, list] = {}  # name -> [lock, users]
        self._name_locks_guard = threading.Lock()

    def _get_thread_service(self):
        """Get a thread-local Google Drive service (httplib2 is NOT thread-safe)."""
        if not hasattr(self._thread_local, 'service'):
            self._thread_local.service = self.service_factory()
        return self._thread_local.service

    @contextmanager
    def _name_lock(self, name: str):
        """Hold the lock for one file name; the entry is dropped once no worker uses it."""
        with self._name_locks_guard:
            entry = self._name_locks.get(name)
            if entry is None:
                entry = self._name_locks[name] = [threading.Lock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._name_locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._name_locks[name]

    def list_remote_files(self) -> List[RemoteFileRecord]:
        """List the destination folder's current children."""
        service = self._get_thread_service()
        records = []
        page_token = None

        try:
            while True:
                query = f"'{self.folder_id}' in parents and trashed=false"
                results = service.files().list(
                    q=query,
                    spaces='drive',
                    fields='nextPageToken, files(id, name)',
                    pageToken=page_token
                ).execute()

                for file in results.get('files', []):
                    records.append(RemoteFileRecord(name=file['name'], id=file['id']))

                page_token = results.get('nextPageToken')
                if not page_token:
                    break
        except Exception as e:
            raise ListingError(f"Error listing folder {self.folder_id}: {e}") from e

        return records

    def upload(self, request: UploadRequest) -> str:
        """Create the file in Drive and return its ID."""
        service = self._get_thread_service()
        try:
            media = MediaFileUpload(request.file_path, resumable=True)
            file = service.files().create(
                body=request.metadata,
                media_body=media,
                fields='id'
            ).execute()
            return file['id']
        except Exception as e:
            raise UploadError(f"Error uploading {request.name}: {e}") from e

    def process(self, event: WatchEvent) -> UploadResult:
        """Run the check-then-upload sequence for one event."""
        file_name = os.path.basename(event.file_path)

        # Same-name files are serialized so the listing sees prior uploads
        with self._name_lock(file_name):
            try:
                existing = self.list_remote_files()
                if any(record.name == file_name for record in existing):
                    return UploadResult(event, UploadOutcome.SKIPPED)

                request = UploadRequest(
                    name=file_name,
                    parent_folder_id=self.folder_id,
                    file_path=event.file_path,
                )
                file_id = self.upload(request)
                return UploadResult(event, UploadOutcome.UPLOADED, file_id=file_id)
            except (ListingError, UploadError) as e:
                return UploadResult(event, UploadOutcome.FAILED, error=e)

    def _process_and_report(self, event: WatchEvent) -> UploadResult:
        result = self.process(event)
        if self.on_result is not None:
            self.on_result(result)
        return result

    def submit(self, event: WatchEvent) -> Future:
        """Queue an event on the worker pool."""
        return self._executor.submit(self._process_and_report, event)

    def shutdown(self, wait: bool = True):
        self._executor.shutdown(wait=wait)


@dataclass
class SyncConfig:
    client_id: str
    client_secret: str
    redirect_uri: str
    folder_id: str
    watch_path: str
    token_path: str = TOKEN_FILE
    max_workers: int = MAX_WORKERS
    upload_existing: bool = True


class DriveWatchSync:
    """Watch a local directory and upload new files to a Google Drive folder."""

    def __init__(
        self,
        config: SyncConfig,
        prompt: Callable[[str], str] = input,
        service_factory: Optional[Callable] = None,
        observer_factory=None,
    ):
        """
        Initialize the sync service.

        Args:
            config: Sync settings
            prompt: Reads the authorization code from the operator
            service_factory: Takes Credentials, returns a Drive service
                (default: googleapiclient build)
            observer_factory: watchdog observer class
        """
        self.config = config
        self.auth = AuthManager(
            config.client_id,
            config.client_secret,
            config.redirect_uri,
            TokenStore(config.token_path),
            prompt=prompt,
        )
        self.service_factory = service_factory or self._build_service
        self.watcher = DirectoryWatcher(
            config.watch_path,
            upload_existing=config.upload_existing,
            observer_factory=observer_factory,
        )
        self.pipeline: Optional[UploadPipeline] = None
        self.creds: Optional[Credentials] = None

    @staticmethod
    def _build_service(creds: Credentials):
        return build('drive', 'v3', credentials=creds, cache_discovery=False)

    def report(self, result: UploadResult):
        """Print the outcome of one event."""
        if result.outcome is UploadOutcome.UPLOADED:
            print(f"📤 Uploaded: {result.name} (ID: {result.file_id})")
        elif result.outcome is UploadOutcome.SKIPPED:
            print(f"⏭️  Already in Drive, skipping: {result.name}")
        else:
            print(f"❌ {result.error}")

    def start(self):
        """Authorize and begin monitoring. Returns once the watcher is running."""
        self.creds = self.auth.authorize()
        creds = self.creds
        self.pipeline = UploadPipeline(
            self.config.folder_id,
            lambda: self.service_factory(creds),
            max_workers=self.config.max_workers,
            on_result=self.report,
        )
        try:
            self.watcher.start(self.pipeline.submit)
        except WatchPathError:
            self.pipeline.shutdown(wait=False)
            raise
        print("👀 File monitoring started. Waiting for new files...")

    def stop(self):
        self.watcher.stop()
        if self.pipeline is not None:
            self.pipeline.shutdown(wait=True)

    def run(self):
        """Monitor until interrupted."""
        print(f"🚀 Drive watch started")
        print(f"📂 Local folder: {self.watcher.path}")
        print(f"☁️  Drive folder ID: {self.config.folder_id}")
        print(f"\nPress Ctrl+C to stop\n")

        self.start()
        try:
            while True:
                time.sleep(1)
        except KeyboardInterrupt:
            print("\n\n👋 Monitoring stopped by user")
        finally:
            self.stop()


def sync_directory_with_drive(
    client_id: str,
    client_secret: str,
    redirect_uri: str,
    folder_id: str,
    watch_path: str,
    **options,
) -> DriveWatchSync:
    """
    Start uploading new files in watch_path to the Drive folder folder_id.

    Extra keyword options are passed to SyncConfig (token_path, max_workers,
    upload_existing). Returns the running DriveWatchSync.
    """
    config = SyncConfig(
        client_id=client_id,
        client_secret=client_secret,
        redirect_uri=redirect_uri,
        folder_id=folder_id,
        watch_path=watch_path,
        **options,
    )
    sync = DriveWatchSync(config)
    sync.start()
    return sync
