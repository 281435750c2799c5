#!/usr/bin/env python3
"""Session Statusline — 2-line status with session time tracking.

Line 1: [Model] (colored by family), project, git branch.
Line 2: context bar + percentage (tokens), today's tracked time
        (+ number of active sessions when more than one).
Optional block: the most recent user message, below or above the lines.

Four fetchers run concurrently on every render (git branch, today's
totals, context usage, last user message); the session heartbeat is
written afterwards, never concurrently with the fetch phase.

Color coding: green <60%, gold 60-79%, red >=80%.

Config:       ~/.claude/session-statusline.toml (optional)
Sessions:     ~/.claude/session-tracker/sessions/<session_id>.json
"""

import sys, json, os, re, subprocess, time, threading, logging
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import NamedTuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError

log = logging.getLogger("session_statusline")

# ═══════════════════════ CONFIG ═══════════════════════

SESSION_DIR = Path("~/.claude/session-tracker/sessions").expanduser()
SESSION_TIMEOUT = 600      # 10 min without a heartbeat starts a new interval
SESSION_DEBOUNCE = 2.0     # Min seconds between disk writes of one session
MAX_CONTEXT_TOKENS = 200_000
CTX_WARN = 60              # Gold from here
CTX_CRIT = 80              # Red from here
CTX_BAR_WIDTH = 10
CTX_SCAN_LINES = 100       # Transcript tail scanned for usage records
MSG_SCAN_LINES = 200       # User turns are sparser than usage records
MSG_MAX_LINES = 3
MSG_LINE_WIDTH = 80
MESSAGE_POSITION = "below" # "below" or "above" the status lines
GIT_CACHE_TTL = 5          # sec
GIT_TIMEOUT = 2.0          # sec, for the single git invocation
BLOCK_SIZE = 8192          # Reverse reader block size

SYM_CTX = ("█", "░")       # Context bar (filled, empty)
SYM_BRANCH = "⎇"

SYSTEM_TAGS = (
    "<local-command-stdout>", "<local-command-stderr>",
    "<bash-stdout>", "<bash-stderr>", "<bash-input>",
)
CAVEAT_PREFIX = "Caveat:"
USAGE_FIELDS = ("input_tokens", "cache_read_input_tokens", "cache_creation_input_tokens")

# ═══════════════════════ TOML CONFIG ═══════════════════════

def load_config():
    """Load optional TOML config, override defaults. Requires tomllib (3.11+) or tomli."""
    global SESSION_DIR, SESSION_TIMEOUT, SESSION_DEBOUNCE
    global MAX_CONTEXT_TOKENS, CTX_WARN, CTX_CRIT, CTX_BAR_WIDTH, CTX_SCAN_LINES
    global MSG_SCAN_LINES, MSG_MAX_LINES, MSG_LINE_WIDTH, MESSAGE_POSITION
    global GIT_CACHE_TTL, GIT_TIMEOUT

    cfg = {}
    cfg_path = Path(os.environ.get("STATUSLINE_CONFIG", "~/.claude/session-statusline.toml")).expanduser()
    if cfg_path.exists():
        try:
            try:
                import tomllib
            except ImportError:
                import tomli as tomllib  # type: ignore
            with open(cfg_path, "rb") as f:
                cfg = tomllib.load(f)
        except Exception as e:
            log.debug("ignoring config %s: %s", cfg_path, e)
            cfg = {}

    s = cfg.get("session", {})
    if "dir" in s:
        SESSION_DIR = Path(s["dir"]).expanduser()
    SESSION_TIMEOUT = s.get("timeout", SESSION_TIMEOUT)
    SESSION_DEBOUNCE = s.get("debounce", SESSION_DEBOUNCE)

    c = cfg.get("context", {})
    MAX_CONTEXT_TOKENS = c.get("max_tokens", MAX_CONTEXT_TOKENS)
    CTX_WARN = c.get("warn", CTX_WARN)
    CTX_CRIT = c.get("crit", CTX_CRIT)
    CTX_BAR_WIDTH = c.get("bar_width", CTX_BAR_WIDTH)
    CTX_SCAN_LINES = c.get("scan_lines", CTX_SCAN_LINES)

    m = cfg.get("message", {})
    MSG_MAX_LINES = m.get("max_lines", MSG_MAX_LINES)
    MSG_LINE_WIDTH = m.get("line_width", MSG_LINE_WIDTH)
    MSG_SCAN_LINES = m.get("scan_lines", MSG_SCAN_LINES)
    if m.get("position") in ("below", "above"):
        MESSAGE_POSITION = m["position"]

    g = cfg.get("git", {})
    GIT_CACHE_TTL = g.get("cache_ttl", GIT_CACHE_TTL)
    GIT_TIMEOUT = g.get("timeout", GIT_TIMEOUT)

    # Env var override (highest priority)
    env_dir = os.environ.get("STATUSLINE_SESSION_DIR")
    if env_dir:
        SESSION_DIR = Path(env_dir).expanduser()

load_config()

# ═══════════════════════ ANSI ═══════════════════════

R  = "\033[0m"                 # Reset
DM = "\033[2m"                 # Dim
GR = "\033[38;2;158;206;106m"  # Green
YL = "\033[38;2;224;175;104m"  # Gold
RD = "\033[38;2;247;118;142m"  # Red/pink
GD = "\033[38;2;214;196;161m"  # Opus
CY = "\033[38;2;122;162;247m"  # Sonnet
PK = "\033[38;2;247;118;142m"  # Haiku
SV = "\033[38;2;192;202;245m"  # Project
GY = "\033[38;2;86;95;137m"    # Muted
CM = "\033[38;2;187;154;247m"  # Slash commands
MS = GR                        # Plain user messages

MODEL_COLORS = (("Opus", GD), ("Sonnet", CY), ("Haiku", PK))

def cpct(pct, txt):
    """Colorize by percentage: green <CTX_WARN, gold <CTX_CRIT, red otherwise."""
    if pct >= CTX_CRIT: return f"{RD}{txt}{R}"
    if pct >= CTX_WARN: return f"{YL}{txt}{R}"
    return f"{GR}{txt}{R}"

def model_color(name):
    for key, color in MODEL_COLORS:
        if key in name:
            return color
    return R

# ═══════════════════════ HELPERS ═══════════════════════

def fmt_tok(t):
    """Format tokens with truncating division: 999, 128k, 1M. Zero is a placeholder."""
    t = max(0, int(t))
    if t == 0:
        return "--"
    if t >= 1_000_000:
        return f"{t // 1_000_000}M"
    if t >= 1000:
        return f"{t // 1000}k"
    return str(t)

def bar(pct, fc, ec, w=10):
    """Progress bar: filled/empty chars, width."""
    pct = max(0, min(100, pct))
    f = pct * w // 100
    return fc * f + ec * (w - f)

def context_pct(tokens, max_tokens=None):
    max_tokens = max_tokens or MAX_CONTEXT_TOKENS
    return min(100, round(100 * max(0, tokens) / max_tokens))

def fmt_hours(sec):
    """Format tracked time: 2h, 1h30m, 45m."""
    sec = max(0, int(sec))
    h, m = sec // 3600, sec % 3600 // 60
    if not h:
        return f"{m}m"
    return f"{h}h{m}m" if m else f"{h}h"

def local_date(ts):
    return datetime.fromtimestamp(ts).date().isoformat()

# ═══════════════════════ RESULTS ═══════════════════════

class Failure(Enum):
    NOT_FOUND = "not_found"
    IO_ERROR = "io_error"
    CORRUPT = "corrupt"
    NO_REPO = "no_repo"
    COMMAND_FAILED = "command_failed"
    TIMEOUT = "timeout"
    UNEXPECTED = "unexpected"


class Result(NamedTuple):
    """Value of one best-effort operation, or the reason there is none.

    Operations report failures; the caller decides which default to render.
    """

    value: object = None
    failure: Failure | None = None

    @classmethod
    def ok(cls, value):
        return cls(value, None)

    @classmethod
    def fail(cls, failure):
        return cls(None, failure)

    def unwrap_or(self, default):
        return default if self.failure is not None else self.value

# ═══════════════════════ MODELS ═══════════════════════

class _Input(BaseModel):
    """Base for stdin data we don't control. Ignores unknown fields."""

    model_config = ConfigDict(extra="ignore", frozen=True)


class ModelInfo(_Input):
    display_name: str


class Workspace(_Input):
    current_dir: str


class Snapshot(_Input):
    """One render's input, decoded from stdin."""

    model: ModelInfo
    session_id: str
    workspace: Workspace
    transcript_path: str | None = None


class Interval(BaseModel):
    start: int
    end: int | None = None


class SessionRecord(BaseModel):
    """Persisted accounting for one session id.

    total_seconds is the sum of (end - start) over closed intervals; files
    on disk never hold an open interval.
    """

    id: str
    date: str  # YYYY-MM-DD, local date of creation
    start: int
    last_heartbeat: int
    total_seconds: int = 0
    intervals: list[Interval] = Field(default_factory=list)


class TodayTotals(NamedTuple):
    seconds: int = 0
    active: int = 0


class Telemetry(NamedTuple):
    branch: str
    today: TodayTotals
    tokens: int
    message: str

# ═══════════════════════ LOCKS ═══════════════════════

class RWLock:
    """Many readers or one writer."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writing = False

    @contextmanager
    def read(self):
        with self._cond:
            while self._writing:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextmanager
    def write(self):
        with self._cond:
            while self._writing or self._readers:
                self._cond.wait()
            self._writing = True
        try:
            yield
        finally:
            with self._cond:
                self._writing = False
                self._cond.notify_all()

# ═══════════════════════ REVERSE READER ═══════════════════════

def read_last_lines(path, n, block_size=BLOCK_SIZE):
    """Last n newline-delimited records of path, in file order.

    Reads fixed-size blocks backwards from the end, so I/O is bounded by
    the size of the tail rather than the file. Raises OSError if path
    cannot be opened.
    """
    if n <= 0:
        return []
    found = []
    with open(path, "rb") as f:
        end = f.seek(0, os.SEEK_END)
        if end == 0:
            return []
        f.seek(end - 1)
        if f.read(1) == b"\n":
            end -= 1  # terminator of the last record, not an empty record
        pos, carry = end, b""
        while pos > 0 and len(found) < n:
            step = min(block_size, pos)
            pos -= step
            f.seek(pos)
            parts = (f.read(step) + carry).split(b"\n")
            carry = parts.pop(0)  # may continue in the previous block
            found.extend(reversed(parts))
        if pos == 0 and len(found) < n:
            found.append(carry)
    found = found[:n]
    found.reverse()
    return [b.decode("utf-8", errors="replace").rstrip("\r") for b in found]

def tail_transcript(path, n):
    try:
        return Result.ok(read_last_lines(path, n))
    except FileNotFoundError:
        return Result.fail(Failure.NOT_FOUND)
    except OSError:
        return Result.fail(Failure.IO_ERROR)

def _records(lines):
    """Parsed main-chain transcript records, newest first."""
    for line in reversed(lines):
        if not line.strip():
            continue
        try:
            rec = json.loads(line)
        except ValueError:
            continue
        if not isinstance(rec, dict) or rec.get("isSidechain") is True:
            continue
        yield rec

def _message(rec):
    msg = rec.get("message")
    return msg if isinstance(msg, dict) else {}

# ═══════════════════════ GIT BRANCH ═══════════════════════

class _BranchEntry(NamedTuple):
    cwd: str
    branch: str
    expires: float


class BranchCache:
    """Current branch per working directory, cached for a few seconds."""

    def __init__(self, ttl=GIT_CACHE_TTL, timeout=GIT_TIMEOUT, clock=time.monotonic):
        self.ttl = ttl
        self.timeout = timeout
        self.clock = clock
        self._lock = RWLock()
        self._entry = None

    def _cached(self, cwd):
        e = self._entry
        if e is not None and e.cwd == cwd and self.clock() < e.expires:
            return e.branch
        return None

    def get(self, cwd):
        with self._lock.read():
            branch = self._cached(cwd)
        if branch is not None:
            return Result.ok(branch)

        with self._lock.write():
            # Another writer may have filled it while we waited
            branch = self._cached(cwd)
            if branch is not None:
                return Result.ok(branch)
            res = self._query(cwd)
            if res.failure is None:
                self._entry = _BranchEntry(cwd, res.value, self.clock() + self.ttl)
            return res

    def _query(self, cwd):
        try:
            r = subprocess.run(
                ["git", "branch", "--show-current"],
                cwd=cwd or None, capture_output=True, text=True, timeout=self.timeout)
        except subprocess.TimeoutExpired:
            return Result.fail(Failure.TIMEOUT)
        except (OSError, ValueError):
            return Result.fail(Failure.COMMAND_FAILED)
        branch = r.stdout.strip() if r.stdout else ""
        if r.returncode != 0 or not branch:
            return Result.fail(Failure.NO_REPO)
        return Result.ok(branch)

# ═══════════════════════ SESSION TRACKER ═══════════════════════

_UNSAFE = re.compile(r"[^\w.-]")

def new_session(session_id, now):
    """Fresh record; its open interval is closed by the heartbeat that follows."""
    return SessionRecord(
        id=session_id, date=local_date(now), start=now, last_heartbeat=now,
        intervals=[Interval(start=now)])

def apply_heartbeat(record, now, timeout=SESSION_TIMEOUT):
    """Advance record to now.

    Within the timeout the last interval is extended; after a longer
    silence a new zero-length interval starts at now, so the idle gap is
    never counted.
    """
    gap = now - record.last_heartbeat
    last = record.intervals[-1] if record.intervals else None
    if last is not None and gap < timeout:
        last.end = now
    else:
        if last is not None and last.end is None:
            last.end = max(last.start, record.last_heartbeat)
        record.intervals.append(Interval(start=now, end=now))
    record.last_heartbeat = now
    record.total_seconds = sum(i.end - i.start for i in record.intervals if i.end is not None)
    return record


class SessionStore:
    """One JSON file per session id."""

    def __init__(self, directory=None):
        self.directory = Path(directory) if directory else SESSION_DIR

    def path(self, session_id):
        return self.directory / f"{_UNSAFE.sub('_', session_id) or '_'}.json"

    def load(self, session_id):
        p = self.path(session_id)
        try:
            text = p.read_text()
        except FileNotFoundError:
            return Result.fail(Failure.NOT_FOUND)
        except UnicodeDecodeError:
            return Result.fail(Failure.CORRUPT)
        except OSError:
            return Result.fail(Failure.IO_ERROR)
        try:
            return Result.ok(SessionRecord.model_validate_json(text))
        except ValidationError:
            return Result.fail(Failure.CORRUPT)

    def save(self, record):
        """Atomic write via temp file + rename. Raises OSError."""
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.path(record.id)
        tmp = path.with_name(f".{path.name}.{os.getpid()}.tmp")
        try:
            tmp.write_text(record.model_dump_json())
            tmp.replace(path)
        except OSError:
            tmp.unlink(missing_ok=True)
            raise

    def scan(self):
        """Yield every readable record; unreadable or corrupt files are skipped."""
        with os.scandir(self.directory) as it:
            names = sorted(e.name for e in it if e.name.endswith(".json"))
        for name in names:
            try:
                yield SessionRecord.model_validate_json((self.directory / name).read_text())
            except (OSError, ValueError):
                continue


class _CacheEntry:
    __slots__ = ("record", "last_write", "dirty")

    def __init__(self, record):
        self.record = record
        self.last_write = None
        self.dirty = False


class SessionTracker:
    """Heartbeat accounting with a debounced write-cache keyed by session id.

    Every heartbeat mutates the in-memory record; the disk write is skipped
    when the same session was written less than `debounce` seconds ago.
    """

    def __init__(self, store, timeout=SESSION_TIMEOUT, debounce=SESSION_DEBOUNCE, clock=time.time):
        self.store = store
        self.timeout = timeout
        self.debounce = debounce
        self.clock = clock
        self._lock = RWLock()
        self._entries = {}

    def heartbeat(self, session_id):
        now = self.clock()
        ts = int(now)
        with self._lock.write():
            entry = self._entries.get(session_id)
            if entry is None:
                entry = self._entries[session_id] = _CacheEntry(self._load(session_id, ts))
            apply_heartbeat(entry.record, ts, self.timeout)
            entry.dirty = True
            if entry.last_write is not None and now - entry.last_write < self.debounce:
                log.debug("session %s: write debounced", session_id)
                return
            self._write(entry, now)

    def flush(self):
        """Write every record with unsaved changes."""
        with self._lock.write():
            for entry in self._entries.values():
                if entry.dirty:
                    self._write(entry, self.clock())

    def peek(self, session_id):
        with self._lock.read():
            entry = self._entries.get(session_id)
            return entry.record.model_copy(deep=True) if entry else None

    def is_dirty(self, session_id):
        with self._lock.read():
            entry = self._entries.get(session_id)
            return bool(entry and entry.dirty)

    def today_totals(self, now=None):
        """Tracked seconds of today's sessions and how many are active now."""
        now = self.clock() if now is None else now
        today = local_date(now)
        try:
            records = list(self.store.scan())
        except FileNotFoundError:
            return Result.ok(TodayTotals())
        except OSError:
            return Result.fail(Failure.IO_ERROR)
        seconds = active = 0
        for rec in records:
            if rec.date != today:
                continue
            seconds += rec.total_seconds
            if now - rec.last_heartbeat < self.timeout:
                active += 1
        return Result.ok(TodayTotals(seconds, active))

    def _load(self, session_id, now):
        res = self.store.load(session_id)
        if res.failure is None:
            return res.value
        if res.failure is Failure.CORRUPT:
            log.debug("session %s: corrupt file, starting fresh", session_id)
        return new_session(session_id, now)

    def _write(self, entry, now):
        try:
            self.store.save(entry.record)
        except OSError as e:
            log.warning("failed to save session %s: %s", entry.record.id, e)
            return False
        entry.last_write = now
        entry.dirty = False
        return True

# ═══════════════════════ CONTEXT USAGE ═══════════════════════

def _num(v):
    return v if isinstance(v, (int, float)) and not isinstance(v, bool) else 0

def usage_total(rec):
    usage = _message(rec).get("usage")
    if not isinstance(usage, dict):
        return 0
    return int(sum(_num(usage.get(k)) for k in USAGE_FIELDS))

def context_tokens(path, lines=CTX_SCAN_LINES):
    """Tokens in the current context window, from the newest main-chain usage record."""
    if not path:
        return Result.ok(0)  # conversation not started yet
    res = tail_transcript(path, lines)
    if res.failure is not None:
        return res
    for rec in _records(res.value):
        total = usage_total(rec)
        if total > 0:
            return Result.ok(total)
    return Result.ok(0)

def ctx_segment(tokens, max_tokens=None, width=None):
    pct = context_pct(tokens, max_tokens)
    gauge = bar(pct, SYM_CTX[0], SYM_CTX[1], width or CTX_BAR_WIDTH)
    return f"{cpct(pct, gauge)} {cpct(pct, f'{pct}% ({fmt_tok(tokens)})')}"

# ═══════════════════════ USER MESSAGE ═══════════════════════

COMMAND_RE = re.compile(r"<command-name>\s*(.*?)\s*</command-name>", re.S)

def is_system_message(content):
    """Session payloads, tool output and caveat notices are not user input."""
    s = content.strip()
    if (s.startswith("[") and s.endswith("]")) or (s.startswith("{") and s.endswith("}")):
        return True
    if any(tag in content for tag in SYSTEM_TAGS):
        return True
    return s.startswith(CAVEAT_PREFIX)

def format_user_message(content, max_lines=None, width=None):
    max_lines = max_lines or MSG_MAX_LINES
    width = width or MSG_LINE_WIDTH

    m = COMMAND_RE.search(content)
    if m and m.group(1):
        name = m.group(1)
        if not name.startswith("/"):
            name = "/" + name
        return f"{R}> {CM}{name}{R}\n"

    lines = content.strip().splitlines()
    if not lines:
        return ""
    color = CM if lines[0].strip().startswith("/") else MS
    out = []
    for line in lines[:max_lines]:
        line = line.strip()
        if len(line) > width:
            line = line[:width - 3] + "..."
        out.append(f"{R}> {color}{line}{R}")
    if len(lines) > max_lines:
        out.append(f"{R}> {DM}... ({len(lines) - max_lines} more lines){R}")
    return "\n".join(out) + "\n"

def find_user_message(lines, session_id):
    """Raw content of the newest qualifying user turn, or None."""
    for rec in _records(lines):
        if rec.get("sessionId") != session_id or rec.get("type") != "user":
            continue
        msg = _message(rec)
        content = msg.get("content")
        if msg.get("role") != "user" or not isinstance(content, str):
            continue
        if not content.strip() or is_system_message(content):
            continue
        return content
    return None

def last_user_message(path, session_id, lines=MSG_SCAN_LINES):
    if not path:
        return Result.ok("")
    res = tail_transcript(path, lines)
    if res.failure is not None:
        return res
    content = find_user_message(res.value, session_id)
    return Result.ok(format_user_message(content) if content else "")

# ═══════════════════════ AGGREGATOR ═══════════════════════

DEFAULTS = {"branch": "", "today": TodayTotals(), "tokens": 0, "message": ""}

def _settle(name, fut):
    try:
        res = fut.result()
    except Exception:
        log.warning("%s fetch failed", name, exc_info=True)
        return Result.fail(Failure.UNEXPECTED)
    if res.failure is not None:
        log.debug("%s unavailable: %s", name, res.failure.value)
    return res


class Aggregator:
    """Fan-out of the four fetchers, fan-in, then the session heartbeat."""

    def __init__(self, branches, tracker):
        self.branches = branches
        self.tracker = tracker

    def collect(self, snap):
        with ThreadPoolExecutor(max_workers=4) as pool:
            futs = {
                "branch": pool.submit(self.branches.get, snap.workspace.current_dir),
                "today": pool.submit(self.tracker.today_totals),
                "tokens": pool.submit(context_tokens, snap.transcript_path),
                "message": pool.submit(last_user_message, snap.transcript_path, snap.session_id),
            }
        return Telemetry(**{k: _settle(k, f).unwrap_or(DEFAULTS[k]) for k, f in futs.items()})

    def render(self, snap):
        t = self.collect(snap)
        # After the fetch phase so only one writer touches the session file
        self.tracker.heartbeat(snap.session_id)
        return compose(snap, t)


def time_segment(today):
    txt = fmt_hours(today.seconds)
    if today.active > 1:
        txt += f" [{today.active} sessions]"
    return f"{GR}{txt}{R}"

def compose(snap, t, position=None):
    """Status block: model/project/branch line, usage/time line, user message."""
    position = position or MESSAGE_POSITION
    name = snap.model.display_name
    cwd = snap.workspace.current_dir
    project = os.path.basename(cwd.rstrip("/\\")) or cwd

    l1 = f"{R}[{model_color(name)}{name}{R}]  {SV}{project}{R}"
    if t.branch:
        l1 += f"  {YL}{SYM_BRANCH} {t.branch}{R}"
    l2 = f"{ctx_segment(t.tokens)} {GY}│{R} {time_segment(t.today)}"
    block = f"{l1}\n{l2}\n"

    if not t.message:
        return block
    return t.message + block if position == "above" else block + t.message

# ═══════════════════════ MAIN ═══════════════════════

def setup_logging():
    level = logging.DEBUG if os.environ.get("STATUSLINE_DEBUG") else logging.WARNING
    logging.basicConfig(level=level, stream=sys.stderr, format="statusline: %(levelname)s %(message)s")

def show_today():
    """Today's tracked time. Called via --today flag."""
    tracker = SessionTracker(SessionStore(SESSION_DIR))
    res = tracker.today_totals()
    if res.failure is not None:
        print(f"Cannot read {SESSION_DIR}: {res.failure.value}")
        return
    print(f"Today: {fmt_hours(res.value.seconds)} | active sessions: {res.value.active}")

def main():
    setup_logging()

    if len(sys.argv) > 1 and sys.argv[1] == "--today":
        show_today()
        return

    try:
        snap = Snapshot.model_validate_json(sys.stdin.read())
    except ValidationError as e:
        print(f"Failed to decode input: {e}", file=sys.stderr)
        sys.exit(1)

    tracker = SessionTracker(SessionStore(SESSION_DIR))
    engine = Aggregator(BranchCache(), tracker)
    sys.stdout.write(engine.render(snap))
    tracker.flush()

if __name__ == "__main__":
    main()
