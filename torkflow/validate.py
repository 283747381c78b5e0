"""Validation of job and scheduled job input documents."""

from __future__ import annotations

import re
import zoneinfo
from dataclasses import dataclass
from typing import Any, Callable, Optional

from .models import (
    AutoDelete,
    AuxTask,
    Defaults,
    Each,
    Job,
    Mount,
    Parallel,
    Permission,
    Probe,
    Retry,
    Schedule,
    ScheduledJob,
    SidecarTask,
    SubJob,
    Task,
    Wait,
    Webhook,
)

MOUNT_TYPE_VOLUME = "volume"
MOUNT_TYPE_BIND = "bind"

QUEUE_EXCLUSIVE_PREFIX = "x-"
QUEUE_PENDING = "pending"
QUEUE_STARTED = "started"
QUEUE_COMPLETED = "completed"
QUEUE_ERROR = "error"
QUEUE_HEARTBEAT = "heartbeat"
QUEUE_JOBS = "jobs"
QUEUE_LOGS = "logs"
QUEUE_PROGRESS = "progress"
QUEUE_REDELIVERIES = "redeliveries"

#: Queues reserved for the coordinator; tasks may not be sent to them.
COORDINATOR_QUEUES = frozenset(
    {
        QUEUE_PENDING,
        QUEUE_STARTED,
        QUEUE_COMPLETED,
        QUEUE_ERROR,
        QUEUE_HEARTBEAT,
        QUEUE_JOBS,
        QUEUE_LOGS,
        QUEUE_PROGRESS,
        QUEUE_REDELIVERIES,
    }
)

_MOUNT_PATTERN = re.compile(r"[-/.0-9a-zA-Z_= ]+")


@dataclass(frozen=True)
class FieldError:
    """One failed rule: where it failed, on which field, and the rule's tag."""

    namespace: str
    field: str
    tag: str

    def __str__(self) -> str:
        return f"{self.namespace}: validation failed on the '{self.tag}' tag"


class ValidationError(ValueError):
    """Raised when a document breaks one or more validation rules."""

    def __init__(self, errors: list[FieldError]) -> None:
        self.errors = list(errors)
        super().__init__("\n".join(str(e) for e in self.errors))


# ---------------------------------------------------------------- durations

_DURATION_UNITS = {
    "ns": 1,
    "us": 1_000,
    "µs": 1_000,
    "μs": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60 * 1_000_000_000,
    "h": 3600 * 1_000_000_000,
}
_DURATION_PART = re.compile(r"(\d*)(?:\.(\d*))?([^\d.]*)")
_MAX_NANOS = 2**63 - 1


def parse_duration(text: str) -> float:
    """Parse a duration such as ``"1h30m"`` or ``"300ms"`` into seconds.

    Accepts the units ns, us (µs), ms, s, m and h, an optional sign and
    decimal fractions. Raises ValueError for anything else.
    """
    s = text
    negative = False
    if s and s[0] in "+-":
        negative = s[0] == "-"
        s = s[1:]
    if s == "0":
        return 0.0
    if not s:
        raise ValueError(f'invalid duration "{text}"')
    nanos = 0
    pos = 0
    while pos < len(s):
        m = _DURATION_PART.match(s, pos)
        whole, frac, unit = m.group(1), m.group(2), m.group(3)
        if not whole and not frac:
            raise ValueError(f'invalid duration "{text}"')
        if not unit:
            raise ValueError(f'missing unit in duration "{text}"')
        scale = _DURATION_UNITS.get(unit)
        if scale is None:
            raise ValueError(f'unknown unit "{unit}" in duration "{text}"')
        nanos += int(whole or "0") * scale
        if frac:
            nanos += int(frac) * scale // 10 ** len(frac)
        if nanos > _MAX_NANOS:
            raise ValueError(f'invalid duration "{text}"')
        pos = m.end()
    return (-nanos if negative else nanos) / 1_000_000_000


# --------------------------------------------------------------------- cron

_MONTHS = {name: i for i, name in enumerate(
    ["jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec"], 1)}
_DAYS = {name: i for i, name in enumerate(["sun", "mon", "tue", "wed", "thu", "fri", "sat"])}
_CRON_FIELDS = [
    (0, 59, None),
    (0, 23, None),
    (1, 31, None),
    (1, 12, _MONTHS),
    (0, 6, _DAYS),
]
_DESCRIPTORS = {"@yearly", "@annually", "@monthly", "@weekly", "@daily", "@midnight", "@hourly"}
_INT = re.compile(r"[+-]?\d+")


def _cron_int(text: str) -> int:
    if not _INT.fullmatch(text):
        raise ValueError(f"failed to parse int from {text}")
    value = int(text)
    if value < 0:
        raise ValueError(f"negative number ({value}) not allowed: {text}")
    return value


def _cron_int_or_name(text: str, names: Optional[dict[str, int]]) -> int:
    if names is not None and text.lower() in names:
        return names[text.lower()]
    return _cron_int(text)


def _check_cron_range(expr: str, low: int, high: int, names: Optional[dict[str, int]]) -> None:
    range_and_step = expr.split("/")
    low_and_high = range_and_step[0].split("-")
    if low_and_high[0] in ("*", "?"):
        start, end = low, high
    else:
        start = _cron_int_or_name(low_and_high[0], names)
        if len(low_and_high) == 1:
            end = start
        elif len(low_and_high) == 2:
            end = _cron_int_or_name(low_and_high[1], names)
        else:
            raise ValueError(f"too many hyphens: {expr}")
    step = 1
    if len(range_and_step) == 2:
        step = _cron_int(range_and_step[1])
        if len(low_and_high) == 1:
            end = high
    elif len(range_and_step) > 2:
        raise ValueError(f"too many slashes: {expr}")
    if start < low or end > high or start > end:
        raise ValueError(f"value out of range: {expr}")
    if step == 0:
        raise ValueError(f"step of range should be a positive number: {expr}")


def _check_cron(spec: str) -> None:
    if not spec:
        raise ValueError("empty spec string")
    if spec.startswith(("TZ=", "CRON_TZ=")):
        space = spec.find(" ")
        if space < 0:
            raise ValueError("missing schedule after time zone")
        zone = spec[spec.index("=") + 1:space]
        if zone not in ("", "UTC", "Local"):
            try:
                zoneinfo.ZoneInfo(zone)
            except (zoneinfo.ZoneInfoNotFoundError, ValueError) as exc:
                raise ValueError(f"provided bad location {zone}") from exc
        spec = spec[space:].strip()
    if spec.startswith("@"):
        if spec in _DESCRIPTORS:
            return
        if spec.startswith("@every "):
            parse_duration(spec[len("@every "):])
            return
        raise ValueError(f"unrecognized descriptor: {spec}")
    fields = spec.split()
    if len(fields) != len(_CRON_FIELDS):
        raise ValueError(f"expected exactly 5 fields, found {len(fields)}: {spec}")
    for text, (low, high, names) in zip(fields, _CRON_FIELDS):
        for part in text.split(","):
            _check_cron_range(part, low, high, names)


def valid_cron(expr: str) -> bool:
    """Return True if ``expr`` is a standard five-field cron spec or descriptor."""
    try:
        _check_cron(expr)
    except ValueError:
        return False
    return True


# -------------------------------------------------------------------- queue

def valid_queue(name: str) -> bool:
    """Return True if tasks may be sent to the queue ``name``."""
    if not name:
        return True
    if name.startswith(QUEUE_EXCLUSIVE_PREFIX):
        return False
    return name not in COORDINATOR_QUEUES


# --------------------------------------------------------------- expression

class _ExprSyntaxError(ValueError):
    pass


_TOKEN_RE = re.compile(
    r"""
     (?P<ws>\s+)
    |(?P<num>0[xX][0-9a-fA-F_]+|\d[\d_]*(?:\.\d[\d_]*)?(?:[eE][+-]?\d+)?|\.\d+(?:[eE][+-]?\d+)?)
    |(?P<str>"(?:[^"\\\n]|\\.)*"|'(?:[^'\\\n]|\\.)*'|`[^`]*`)
    |(?P<name>[A-Za-z_$][A-Za-z0-9_$]*)
    |(?P<op>\.\.|\?\?|\?\.|\*\*|==|!=|<=|>=|&&|\|\||[-+*/%<>!?:.,()\[\]{}|^\#])
    """,
    re.X,
)
_BINARY = {
    "|": 5,
    "or": 10, "||": 10,
    "and": 15, "&&": 15,
    "==": 20, "!=": 20, "<": 20, ">": 20, "<=": 20, ">=": 20,
    "in": 20, "matches": 20, "contains": 20, "startsWith": 20, "endsWith": 20,
    "..": 25,
    "+": 30, "-": 30,
    "*": 60, "/": 60, "%": 60,
    "**": 100, "^": 100,
    "??": 500,
}
_RIGHT_ASSOC = {"**", "^"}
_NEGATABLE = {"in", "matches", "contains", "startsWith", "endsWith"}
_WORD_OPERATORS = {"and", "or", "not"} | _NEGATABLE
_TEMPLATE = re.compile(r"\{\{(.+)\}\}")


def _tokenize(text: str) -> list[tuple[str, str]]:
    tokens = []
    pos = 0
    while pos < len(text):
        m = _TOKEN_RE.match(text, pos)
        if m is None:
            raise _ExprSyntaxError(f"unexpected character at {pos}")
        if m.lastgroup != "ws":
            tokens.append((m.lastgroup, m.group()))
        pos = m.end()
    tokens.append(("eof", ""))
    return tokens


class _ExprParser:
    def __init__(self, tokens: list[tuple[str, str]]) -> None:
        self._tokens = tokens
        self._pos = 0

    def _peek(self, offset: int = 0) -> tuple[str, str]:
        return self._tokens[min(self._pos + offset, len(self._tokens) - 1)]

    def _next(self) -> tuple[str, str]:
        token = self._peek()
        self._pos = min(self._pos + 1, len(self._tokens) - 1)
        return token

    def _at(self, text: str) -> bool:
        kind, value = self._peek()
        return kind in ("op", "name") and value == text

    def _expect(self, text: str) -> None:
        kind, value = self._next()
        if kind not in ("op", "name") or value != text:
            raise _ExprSyntaxError(f"expected {text!r}, got {value!r}")

    def parse(self) -> None:
        if self._peek()[0] == "eof":
            raise _ExprSyntaxError("empty expression")
        self._expression(0)
        if self._peek()[0] != "eof":
            raise _ExprSyntaxError(f"unexpected token {self._peek()[1]!r}")

    def _binary_operator(self) -> tuple[str, int] | None:
        kind, value = self._peek()
        if kind not in ("op", "name"):
            return None
        if value == "not" and self._peek(1)[1] in _NEGATABLE:
            return self._peek(1)[1], 2
        if value in _BINARY:
            return value, 1
        return None

    def _expression(self, min_prec: int) -> None:
        self._unary()
        while True:
            found = self._binary_operator()
            if found is None:
                break
            op, width = found
            prec = _BINARY[op]
            if prec < min_prec:
                break
            self._pos += width
            self._expression(prec if op in _RIGHT_ASSOC else prec + 1)
        if min_prec == 0 and self._at("?"):
            self._next()
            self._expression(0)
            self._expect(":")
            self._expression(0)

    def _unary(self) -> None:
        if self._at("not") or self._at("!"):
            self._next()
            self._expression(50)
        elif self._at("-") or self._at("+"):
            self._next()
            self._expression(90)
        else:
            self._postfix()

    def _primary(self) -> None:
        kind, value = self._next()
        if kind in ("num", "str"):
            return
        if kind == "name":
            if value in _WORD_OPERATORS:
                raise _ExprSyntaxError(f"unexpected operator {value!r}")
            return
        if value == "#":
            if self._peek()[0] == "name" and self._peek()[1] not in _WORD_OPERATORS:
                self._next()
            return
        if value == ".":
            if self._next()[0] != "name":
                raise _ExprSyntaxError("expected a name after '.'")
            return
        if value == "(":
            self._expression(0)
            self._expect(")")
            return
        if value == "[":
            self._sequence("]")
            return
        if value == "{":
            self._braces()
            return
        raise _ExprSyntaxError(f"unexpected token {value!r}")

    def _postfix(self) -> None:
        self._primary()
        while True:
            if self._at(".") or self._at("?."):
                self._next()
                if self._next()[0] != "name":
                    raise _ExprSyntaxError("expected a member name")
            elif self._at("["):
                self._next()
                self._index()
            elif self._at("("):
                self._next()
                self._sequence(")")
            else:
                return

    def _sequence(self, close: str) -> None:
        if self._at(close):
            self._next()
            return
        while True:
            self._expression(0)
            if self._at(","):
                self._next()
                if self._at(close):
                    self._next()
                    return
                continue
            self._expect(close)
            return

    def _index(self) -> None:
        if self._at(":"):
            self._next()
            if not self._at("]"):
                self._expression(0)
            self._expect("]")
            return
        self._expression(0)
        if self._at(":"):
            self._next()
            if not self._at("]"):
                self._expression(0)
        self._expect("]")

    def _braces(self) -> None:
        if self._at("}"):
            self._next()
            return
        if self._peek()[0] in ("name", "str", "num") and self._peek(1) == ("op", ":"):
            self._map_entries()
            return
        # a predicate closure such as {# > 1}
        self._expression(0)
        self._expect("}")

    def _map_entries(self) -> None:
        while True:
            kind, value = self._next()
            if value == "(" and kind == "op":
                self._expression(0)
                self._expect(")")
            elif kind not in ("name", "str", "num"):
                raise _ExprSyntaxError(f"invalid map key {value!r}")
            self._expect(":")
            self._expression(0)
            if self._at(","):
                self._next()
                if self._at("}"):
                    self._next()
                    return
                continue
            self._expect("}")
            return


def valid_expr(expr: str) -> bool:
    """Return True if ``expr`` (optionally wrapped in ``{{ }}``) is well formed."""
    m = _TEMPLATE.fullmatch(expr)
    if m is not None:
        expr = m.group(1)
    try:
        _ExprParser(_tokenize(expr)).parse()
    except _ExprSyntaxError:
        return False
    return True


# ---------------------------------------------------------------- validator

Check = Callable[[Any], Optional[str]]


def _size(value: Any) -> int:
    return value if isinstance(value, int) else len(value)


def _required(value: Any) -> Optional[str]:
    if value:
        return None
    return "required"


def _min(n: int) -> Check:
    return lambda value: None if _size(value) >= n else "min"


def _max(n: int) -> Check:
    return lambda value: None if _size(value) <= n else "max"


def _duration(value: str) -> Optional[str]:
    if not value:
        return None
    try:
        parse_duration(value)
    except ValueError:
        return "duration"
    return None


def _queue(value: str) -> Optional[str]:
    if valid_queue(value):
        return None
    return "queue"


def _expr(value: str) -> Optional[str]:
    if not value:
        return None
    return None if valid_expr(value) else "expr"


def _cron(value: str) -> Optional[str]:
    if valid_cron(value):
        return None
    return "cron"


class _Validator:
    def __init__(self, datastore: Any) -> None:
        self._ds = datastore
        self.errors: list[FieldError] = []

    def report(self, ns: str, name: str, tag: str) -> None:
        self.errors.append(FieldError(f"{ns}.{name}", name, tag))

    def field(self, ns: str, name: str, value: Any, *checks: Check) -> bool:
        for check in checks:
            tag = check(value)
            if tag is not None:
                self.report(ns, name, tag)
                return False
        return True

    def _job_common(self, job: Job | ScheduledJob, ns: str) -> None:
        self.field(ns, "name", job.name, _required)
        if self.field(ns, "tasks", job.tasks, _required, _min(1)):
            for i, task in enumerate(job.tasks):
                self.task(task, f"{ns}.tasks[{i}]")
        self.field(ns, "output", job.output, _expr)
        if job.defaults is not None:
            self.defaults(job.defaults, f"{ns}.defaults")
        for i, webhook in enumerate(job.webhooks):
            self.webhook(webhook, f"{ns}.webhooks[{i}]")
        for i, perm in enumerate(job.permissions):
            self.permission(perm, f"{ns}.permissions[{i}]")
        if job.auto_delete is not None:
            self.auto_delete(job.auto_delete, f"{ns}.autoDelete")

    def job(self, job: Job, ns: str) -> None:
        self._job_common(job, ns)
        if job.wait is not None:
            self.wait(job.wait, f"{ns}.wait")

    def scheduled_job(self, job: ScheduledJob, ns: str) -> None:
        self._job_common(job, ns)
        if self.field(ns, "schedule", job.schedule, _required):
            self.schedule(job.schedule, f"{ns}.schedule")

    def defaults(self, d: Defaults, ns: str) -> None:
        if d.retry is not None:
            self.retry(d.retry, f"{ns}.retry")
        self.field(ns, "timeout", d.timeout, _duration)
        self.field(ns, "queue", d.queue, _queue)
        self.field(ns, "priority", d.priority, _min(0), _max(9))

    def schedule(self, s: Schedule, ns: str) -> None:
        self.field(ns, "cron", s.cron, _required, _cron)

    def auto_delete(self, a: AutoDelete, ns: str) -> None:
        self.field(ns, "after", a.after, _duration)

    def wait(self, w: Wait, ns: str) -> None:
        self.field(ns, "timeout", w.timeout, _duration, _required)

    def webhook(self, w: Webhook, ns: str) -> None:
        self.field(ns, "url", w.url, _required)
        self.field(ns, "if", w.if_, _expr)

    def permission(self, perm: Permission, ns: str) -> None:
        if not perm.role and not perm.user:
            self.report(ns, "perm", "roleoruser")
        if perm.role and perm.user:
            self.report(ns, "perm", "roleoruser")
        if perm.user and not self._exists("get_user", perm.user):
            self.report(ns, "perm", "invalidusername")
        if perm.role and not self._exists("get_role", perm.role):
            self.report(ns, "perm", "invalidrole")

    def _exists(self, method: str, key: str) -> bool:
        if self._ds is None:
            return False
        try:
            getattr(self._ds, method)(key)
        except Exception:
            return False
        return True

    def retry(self, r: Retry, ns: str) -> None:
        self.field(ns, "limit", r.limit, _required, _min(1), _max(10))

    def aux_task(self, t: AuxTask, ns: str) -> None:
        self.field(ns, "name", t.name, _required)

    def sidecar(self, t: SidecarTask, ns: str) -> None:
        self.field(ns, "name", t.name, _required)
        if t.probe is not None:
            self.probe(t.probe, f"{ns}.probe")

    def probe(self, p: Probe, ns: str) -> None:
        self.field(ns, "path", p.path, _required, _max(256))
        self.field(ns, "port", p.port, _required, _min(1), _max(65535))
        self.field(ns, "timeout", p.timeout, _duration)

    def mount(self, m: Mount, ns: str) -> None:
        tag = None
        if not m.type:
            tag = "typerequired"
        elif m.type == MOUNT_TYPE_VOLUME and m.source:
            tag = "sourcenotempty"
        elif m.type == MOUNT_TYPE_VOLUME and not m.target:
            tag = "targetrequired"
        elif m.type == MOUNT_TYPE_BIND and not m.source:
            tag = "sourcerequired"
        elif m.source and not _MOUNT_PATTERN.fullmatch(m.source):
            tag = "invalidsource"
        elif m.target and not _MOUNT_PATTERN.fullmatch(m.target):
            tag = "invalidtarget"
        elif m.target == "/tork":
            tag = "invalidtarget"
        if tag is not None:
            self.report(ns, "mount", tag)

    def parallel(self, p: Parallel, ns: str) -> None:
        if self.field(ns, "tasks", p.tasks, _required, _min(1)):
            for i, task in enumerate(p.tasks):
                self.task(task, f"{ns}.tasks[{i}]")

    def each(self, e: Each, ns: str) -> None:
        self.field(ns, "list", e.list, _required, _expr)
        self.task(e.task, f"{ns}.task")
        self.field(ns, "concurrency", e.concurrency, _min(0), _max(99999))

    def subjob(self, s: SubJob, ns: str) -> None:
        self.field(ns, "name", s.name, _required)
        self.field(ns, "tasks", s.tasks, _required)
        for i, webhook in enumerate(s.webhooks):
            self.webhook(webhook, f"{ns}.webhooks[{i}]")

    def task(self, t: Task, ns: str) -> None:
        self.field(ns, "name", t.name, _required)
        self.field(ns, "queue", t.queue, _queue)
        for i, aux in enumerate(t.pre):
            self.aux_task(aux, f"{ns}.pre[{i}]")
        for i, aux in enumerate(t.post):
            self.aux_task(aux, f"{ns}.post[{i}]")
        for i, sidecar in enumerate(t.sidecars):
            self.sidecar(sidecar, f"{ns}.sidecars[{i}]")
        for i, mount in enumerate(t.mounts):
            self.mount(mount, f"{ns}.mounts[{i}]")
        if t.retry is not None:
            self.retry(t.retry, f"{ns}.retry")
        self.field(ns, "timeout", t.timeout, _duration)
        self.field(ns, "var", t.var, _max(64))
        self.field(ns, "if", t.if_, _expr)
        if t.parallel is not None:
            self.parallel(t.parallel, f"{ns}.parallel")
        if t.each is not None:
            self.each(t.each, f"{ns}.each")
        if t.subjob is not None:
            self.subjob(t.subjob, f"{ns}.subjob")
        self.field(ns, "workdir", t.workdir, _max(256))
        self.field(ns, "priority", t.priority, _min(0), _max(9))
        self._task_type(t, ns)
        self._composite(t, ns)

    def _task_type(self, t: Task, ns: str) -> None:
        if t.parallel is not None and t.each is not None:
            self.report(ns, "each", "paralleloreach")
            self.report(ns, "parallel", "paralleloreach")
        if t.parallel is not None and t.subjob is not None:
            self.report(ns, "subjob", "parallelorsubjob")
            self.report(ns, "parallel", "parallelorsubjob")
        if t.each is not None and t.subjob is not None:
            self.report(ns, "subjob", "eachorsubjob")
            self.report(ns, "each", "eachorsubjob")

    def _composite(self, t: Task, ns: str) -> None:
        if t.parallel is None and t.each is None and t.subjob is None:
            return
        present = {
            "image": bool(t.image),
            "cmd": bool(t.cmd),
            "entrypoint": bool(t.entrypoint),
            "run": bool(t.run),
            "env": bool(t.env),
            "queue": bool(t.queue),
            "pre": bool(t.pre),
            "post": bool(t.post),
            "mounts": bool(t.mounts),
            "retry": t.retry is not None,
            "limits": t.limits is not None,
            "timeout": bool(t.timeout),
        }
        for name, is_set in present.items():
            if is_set:
                self.report(ns, name, "invalidcompositetask")


def validate_job(job: Job, datastore: Any = None) -> None:
    """Check a job document; raise ValidationError listing every failed rule.

    ``datastore`` must offer ``get_user(username)`` and ``get_role(slug)``,
    raising when the user or role does not exist; it is consulted only for
    permissions.
    """
    validator = _Validator(datastore)
    validator.job(job, "job")
    if validator.errors:
        raise ValidationError(validator.errors)


def validate_scheduled_job(job: ScheduledJob, datastore: Any = None) -> None:
    """Check a scheduled job document; raise ValidationError on failure."""
    validator = _Validator(datastore)
    validator.scheduled_job(job, "scheduledJob")
    if validator.errors:
        raise ValidationError(validator.errors)