"""Input documents describing jobs, scheduled jobs and their tasks.

Each document is a dataclass. The ``*_from_dict``, ``*_from_json`` and
``*_from_yaml`` functions build them strictly: unknown keys and values of the
wrong type raise :class:`InputError`.
"""

from __future__ import annotations

import dataclasses
import functools
import json
import uuid
from dataclasses import dataclass, field
from typing import Any

import yaml


class InputError(ValueError):
    """Raised when an input document cannot be decoded."""


def _new_id() -> str:
    return uuid.uuid4().hex


def _key(f: dataclasses.Field) -> str:
    return f.metadata.get("key", f.name)


def _keyed(key: str, **kwargs: Any) -> Any:
    return field(metadata={"key": key}, **kwargs)


def _encode(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return value.to_dict()
    if isinstance(value, list):
        return [_encode(v) for v in value]
    if isinstance(value, dict):
        return {k: _encode(v) for k, v in value.items()}
    return value


class _Model:
    """Common behaviour of the input documents."""

    def to_dict(self) -> dict[str, Any]:
        """Return the document as plain data, leaving out empty values."""
        out: dict[str, Any] = {}
        for f in dataclasses.fields(self):  # type: ignore[arg-type]
            if not f.init:
                continue
            value = getattr(self, f.name)
            if value is None:
                continue
            if not dataclasses.is_dataclass(value) and not value:
                continue
            out[_key(f)] = _encode(value)
        return out


@dataclass
class Registry(_Model):
    username: str = ""
    password: str = ""


@dataclass
class Mount(_Model):
    type: str = ""
    source: str = ""
    target: str = ""


@dataclass
class Retry(_Model):
    limit: int = 0


@dataclass
class Limits(_Model):
    cpus: str = ""
    memory: str = ""


@dataclass
class Probe(_Model):
    path: str = ""
    port: int = 0
    timeout: str = ""


@dataclass
class AuxTask(_Model):
    name: str = ""
    description: str = ""
    cmd: list[str] = field(default_factory=list)
    entrypoint: list[str] = field(default_factory=list)
    run: str = ""
    image: str = ""
    registry: Registry | None = None
    env: dict[str, str] = field(default_factory=dict)
    files: dict[str, str] = field(default_factory=dict)
    timeout: str = ""


@dataclass
class SidecarTask(_Model):
    name: str = ""
    description: str = ""
    cmd: list[str] = field(default_factory=list)
    entrypoint: list[str] = field(default_factory=list)
    run: str = ""
    image: str = ""
    registry: Registry | None = None
    env: dict[str, str] = field(default_factory=dict)
    files: dict[str, str] = field(default_factory=dict)
    timeout: str = ""
    probe: Probe | None = None


@dataclass
class Webhook(_Model):
    url: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    event: str = ""
    if_: str = _keyed("if", default="")


@dataclass
class Permission(_Model):
    user: str = ""
    role: str = ""


@dataclass
class AutoDelete(_Model):
    after: str = ""


@dataclass
class Wait(_Model):
    timeout: str = ""


@dataclass
class Schedule(_Model):
    cron: str = ""


@dataclass
class Defaults(_Model):
    retry: Retry | None = None
    limits: Limits | None = None
    timeout: str = ""
    queue: str = ""
    priority: int = 0


@dataclass
class Parallel(_Model):
    tasks: list[Task] = field(default_factory=list)


@dataclass
class Each(_Model):
    var: str = ""
    list: str = ""
    task: Task = field(default_factory=lambda: Task())
    concurrency: int = 0


@dataclass
class SubJob(_Model):
    id: str = ""
    name: str = ""
    description: str = ""
    tasks: list[Task] = field(default_factory=list)
    inputs: dict[str, str] = field(default_factory=dict)
    secrets: dict[str, str] = field(default_factory=dict)
    auto_delete: AutoDelete | None = _keyed("autoDelete", default=None)
    output: str = ""
    detached: bool = False
    webhooks: list[Webhook] = field(default_factory=list)


@dataclass
class Task(_Model):
    name: str = ""
    description: str = ""
    cmd: list[str] = field(default_factory=list)
    entrypoint: list[str] = field(default_factory=list)
    run: str = ""
    image: str = ""
    registry: Registry | None = None
    env: dict[str, str] = field(default_factory=dict)
    files: dict[str, str] = field(default_factory=dict)
    queue: str = ""
    pre: list[AuxTask] = field(default_factory=list)
    post: list[AuxTask] = field(default_factory=list)
    sidecars: list[SidecarTask] = field(default_factory=list)
    mounts: list[Mount] = field(default_factory=list)
    networks: list[str] = field(default_factory=list)
    retry: Retry | None = None
    limits: Limits | None = None
    timeout: str = ""
    var: str = ""
    if_: str = _keyed("if", default="")
    parallel: Parallel | None = None
    each: Each | None = None
    subjob: SubJob | None = None
    gpus: str = ""
    tags: list[str] = field(default_factory=list)
    workdir: str = ""
    priority: int = 0


@dataclass
class Job(_Model):
    name: str = ""
    description: str = ""
    tags: list[str] = field(default_factory=list)
    tasks: list[Task] = field(default_factory=list)
    inputs: dict[str, str] = field(default_factory=dict)
    secrets: dict[str, str] = field(default_factory=dict)
    output: str = ""
    defaults: Defaults | None = None
    webhooks: list[Webhook] = field(default_factory=list)
    permissions: list[Permission] = field(default_factory=list)
    auto_delete: AutoDelete | None = _keyed("autoDelete", default=None)
    wait: Wait | None = None
    _id: str = field(default="", init=False, repr=False, compare=False)

    def id(self) -> str:
        """Return the job's identifier, generating it on first use."""
        if not self._id:
            self._id = _new_id()
        return self._id


@dataclass
class ScheduledJob(_Model):
    name: str = ""
    description: str = ""
    tags: list[str] = field(default_factory=list)
    tasks: list[Task] = field(default_factory=list)
    inputs: dict[str, str] = field(default_factory=dict)
    secrets: dict[str, str] = field(default_factory=dict)
    output: str = ""
    defaults: Defaults | None = None
    webhooks: list[Webhook] = field(default_factory=list)
    permissions: list[Permission] = field(default_factory=list)
    auto_delete: AutoDelete | None = _keyed("autoDelete", default=None)
    schedule: Schedule | None = None
    _id: str = field(default="", init=False, repr=False, compare=False)

    def id(self) -> str:
        """Return the scheduled job's identifier, generating it on first use."""
        if not self._id:
            self._id = _new_id()
        return self._id


_NAMED_TYPES: dict[str, type] = {
    "str": str,
    "int": int,
    "bool": bool,
    "Registry": Registry,
    "Mount": Mount,
    "Retry": Retry,
    "Limits": Limits,
    "Probe": Probe,
    "AuxTask": AuxTask,
    "SidecarTask": SidecarTask,
    "Webhook": Webhook,
    "Permission": Permission,
    "AutoDelete": AutoDelete,
    "Wait": Wait,
    "Schedule": Schedule,
    "Defaults": Defaults,
    "Parallel": Parallel,
    "Each": Each,
    "SubJob": SubJob,
    "Task": Task,
    "Job": Job,
    "ScheduledJob": ScheduledJob,
}


@functools.lru_cache(maxsize=None)
def _resolve(annotation: str) -> Any:
    """Turn a field annotation into a decoding spec.

    A spec is a type, or a tuple ``(kind, inner)`` where kind is
    ``"optional"``, ``"list"`` or ``"dict"``.
    """
    text = annotation.strip()
    if text.endswith("| None"):
        return ("optional", _resolve(text[: -len("| None")]))
    if text.startswith("list[") and text.endswith("]"):
        return ("list", _resolve(text[len("list["):-1]))
    if text.startswith("dict[") and text.endswith("]"):
        key_type, _, value_type = text[len("dict["):-1].partition(",")
        if key_type.strip() != "str":
            raise TypeError(f"unsupported field type: {annotation!r}")
        return ("dict", _resolve(value_type))
    try:
        return _NAMED_TYPES[text]
    except KeyError:
        raise TypeError(f"unsupported field type: {annotation!r}") from None


@functools.lru_cache(maxsize=None)
def _fields_by_key(cls: type) -> dict[str, dataclasses.Field]:
    return {_key(f): f for f in dataclasses.fields(cls) if f.init}


def _decode(spec: Any, value: Any, path: str) -> Any:
    if isinstance(spec, tuple):
        kind, inner = spec
        if kind == "optional":
            if value is None:
                return None
            return _decode(inner, value, path)
        if kind == "list":
            if not isinstance(value, list):
                raise InputError(f"{path}: expected a list")
            return [_decode(inner, v, f"{path}[{i}]") for i, v in enumerate(value)]
        if not isinstance(value, dict):
            raise InputError(f"{path}: expected an object")
        result = {}
        for k, v in value.items():
            if not isinstance(k, str):
                raise InputError(f"{path}: keys must be strings")
            result[k] = _decode(inner, v, f"{path}.{k}")
        return result
    if dataclasses.is_dataclass(spec):
        return _decode_model(spec, value, path)
    if spec is bool:
        if not isinstance(value, bool):
            raise InputError(f"{path}: expected a boolean")
        return value
    if spec is int:
        if not isinstance(value, int) or isinstance(value, bool):
            raise InputError(f"{path}: expected an integer")
        return value
    if spec is str:
        if not isinstance(value, str):
            raise InputError(f"{path}: expected a string")
        return value
    raise TypeError(f"unsupported field type: {spec!r}")


def _decode_model(cls: type, data: Any, path: str) -> Any:
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise InputError(f"{path}: expected an object")
    by_key = _fields_by_key(cls)
    kwargs: dict[str, Any] = {}
    for key, value in data.items():
        f = by_key.get(key)
        if f is None:
            raise InputError(f'{path}: unknown field "{key}"')
        if value is None:
            continue
        spec = _resolve(f.type) if isinstance(f.type, str) else f.type
        kwargs[f.name] = _decode(spec, value, f"{path}.{key}")
    return cls(**kwargs)


def _load_json(text: str) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise InputError(f"invalid JSON: {exc}") from exc


def _load_yaml(text: str) -> Any:
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise InputError(f"invalid YAML: {exc}") from exc
    if data is None:
        raise InputError("empty YAML document")
    return data


def job_from_dict(data: Any) -> Job:
    """Build a :class:`Job` from plain data."""
    if not isinstance(data, dict):
        raise InputError("job: expected an object")
    return _decode_model(Job, data, "job")


def scheduled_job_from_dict(data: Any) -> ScheduledJob:
    """Build a :class:`ScheduledJob` from plain data."""
    if not isinstance(data, dict):
        raise InputError("scheduled job: expected an object")
    return _decode_model(ScheduledJob, data, "scheduled job")


def job_from_json(text: str) -> Job:
    """Parse a JSON job document."""
    return job_from_dict(_load_json(text))


def job_from_yaml(text: str) -> Job:
    """Parse a YAML job document."""
    return job_from_dict(_load_yaml(text))


def scheduled_job_from_json(text: str) -> ScheduledJob:
    """Parse a JSON scheduled job document."""
    return scheduled_job_from_dict(_load_json(text))


def scheduled_job_from_yaml(text: str) -> ScheduledJob:
    """Parse a YAML scheduled job document."""
    return scheduled_job_from_dict(_load_yaml(text))