import os
import json
import math
import time
import fcntl
import random
import string
import logging
import stat
import tempfile
import threading
from contextlib import contextmanager
from datetime import datetime, timezone

log = logging.getLogger(__name__)

ID_ALPHABET = string.digits + string.ascii_lowercase


def reject_constant(name):
    raise ValueError(f'{name} is not valid JSON')


def finite_float(text):
    """Parse a JSON number; values that overflow a double become None."""
    value = float(text)
    return value if math.isfinite(value) else None


def loads(text):
    """Strict JSON parsing: no NaN or Infinity, before or after parsing."""
    return json.loads(text, parse_constant=reject_constant, parse_float=finite_float)


def default_file_mode():
    umask = os.umask(0)
    os.umask(umask)
    return 0o666 & ~umask


class VisitorStoreError(Exception):
    """Raised when the visitor file cannot be read or written."""


def generate_visitor_id():
    millis = int(time.time() * 1000)
    suffix = ''.join(random.choice(ID_ALPHABET) for _ in range(9))
    return f'{millis}-{suffix}'


def server_timestamp():
    now = datetime.now(timezone.utc)
    return now.isoformat(timespec='milliseconds').replace('+00:00', 'Z')


class VisitorStore:
    """Ordered list of visitor records kept as one JSON array on disk.

    Every mutation rewrites the whole file. Appends are serialized by a
    thread lock plus an exclusive flock on ``<path>.lock`` so that neither
    threads nor separate worker processes can drop each other's records.
    The file itself is replaced atomically, so readers see either the old
    or the new array, never a half-written one.
    """

    def __init__(self, path):
        self.path = os.fspath(path)
        self.lock_path = self.path + '.lock'
        self._lock = threading.Lock()

    def ensure_initialized(self):
        directory = os.path.dirname(self.path)
        if directory and not os.path.exists(directory):
            os.makedirs(directory, exist_ok=True)
        if not os.path.exists(self.path):
            self._write([])
            log.info('Created empty visitor file at %s', self.path)

    def read_all(self):
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                visitors = loads(f.read())
        except (OSError, ValueError) as e:
            raise VisitorStoreError(f'cannot read {self.path}') from e
        if not isinstance(visitors, list):
            raise VisitorStoreError(f'{self.path} does not hold a JSON array')
        return visitors

    def load(self):
        try:
            return self.read_all()
        except VisitorStoreError as e:
            log.warning('Starting a new visitor list: %s (%s)', e, e.__cause__)
            return []

    def append(self, record):
        with self._exclusive():
            visitors = self.load()
            visitors.append(record)
            self._write(visitors)
        return record

    @contextmanager
    def _exclusive(self):
        with self._lock:
            try:
                f = open(self.lock_path, 'a')
            except OSError as e:
                raise VisitorStoreError(f'cannot open {self.lock_path}') from e
            # The flock is released when the lock file is closed
            with f:
                try:
                    # Blocks until any other process holding the lock is done.
                    fcntl.flock(f, fcntl.LOCK_EX)
                except OSError as e:
                    raise VisitorStoreError(f'cannot lock {self.lock_path}') from e
                yield

    def _write(self, visitors):
        directory = os.path.dirname(self.path) or '.'
        try:
            mode = stat.S_IMODE(os.stat(self.path).st_mode)
        except FileNotFoundError:
            mode = default_file_mode()
        except OSError as e:
            raise VisitorStoreError(f'cannot stat {self.path}') from e
        try:
            fd, tmp_path = tempfile.mkstemp(
                prefix='.visitors-', suffix='.tmp', dir=directory)
        except OSError as e:
            raise VisitorStoreError(f'cannot write {self.path}') from e
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(visitors, f, indent=2, ensure_ascii=False, allow_nan=False)
                f.flush()
                os.fsync(f.fileno())
                # mkstemp creates 0600 files
                os.fchmod(f.fileno(), mode)
            os.replace(tmp_path, self.path)
        except (OSError, TypeError, ValueError) as e:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise VisitorStoreError(f'cannot write {self.path}') from e
