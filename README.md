# torkflow

Building blocks for a distributed task workflow system: job and task
documents, their validation, an expiring in-memory cache, health checks
and an engine that moves through a fixed lifecycle.

## Installation

```
pip install torkflow
```

To run the test suite:

```
pip install "torkflow[test]"
pytest
```

## Job documents (`torkflow.models`)

Jobs and scheduled jobs are dataclasses (`Job`, `ScheduledJob`, `Task`,
`Each`, `Parallel`, `SubJob`, `Mount`, `Webhook`, `Permission`, ...).
They are built from JSON, YAML or plain dictionaries. Decoding is strict:
unknown keys and values of the wrong type raise `InputError`.

```python
from torkflow.models import job_from_yaml

job = job_from_yaml("""
name: hello job
tasks:
  - name: say hello
    image: ubuntu:mantic
    run: echo hello
""")
print(job.id())        # generated on first use, stable afterwards
print(job.to_dict())   # plain data, empty values left out
```

`job_from_json`, `job_from_dict`, `scheduled_job_from_json`,
`scheduled_job_from_yaml` and `scheduled_job_from_dict` work the same way.
Keys follow the document format: `if` maps to the `if_` attribute and
`autoDelete` to `auto_delete`.

## Validation (`torkflow.validate`)

```python
from torkflow.validate import validate_job, ValidationError

try:
    validate_job(job, datastore)
except ValidationError as err:
    for field_error in err.errors:
        print(field_error.namespace, field_error.tag)
```

Validation collects every failed rule into a `ValidationError` whose
`errors` is a list of `FieldError`. It checks required fields, durations
such as `6h` or `1m30s`, queue names (no `x-` prefix and none of the
coordinator's own queues), expressions, mount definitions, retry limits,
priorities, `var` and `workdir` lengths, sidecar probes, that `parallel`,
`each` and `subjob` are used one at a time, and that composite tasks carry
no image, command, queue, mounts and the like.

Permissions must name exactly one of a user or a role; the `datastore`
argument must offer `get_user(username)` and `get_role(slug)`, raising when
the name is unknown. Without a datastore every permission is rejected.

`validate_scheduled_job` also requires a schedule with a standard
five-field cron expression (or a descriptor such as `@daily` or
`@every 1h`).

The helpers can be used on their own:

- `parse_duration("1h30m")` returns seconds as a float, raising `ValueError`
  for malformed input;
- `valid_cron(expr)`, `valid_queue(name)` and `valid_expr(expr)` return
  booleans. `valid_expr` checks syntax only, and accepts an expression
  wrapped in `{{ }}`.

## Cache (`torkflow.cache`)

```python
from torkflow.cache import Cache, NO_EXPIRATION

with Cache(default_expiration=60.0, cleanup_interval=5.0) as cache:
    cache.set("a", 1)
    cache.modify("a", lambda v: v + 1)
    print(cache.get("a"))              # 2
    cache.set_with_expiration("b", 2, NO_EXPIRATION)
    print("b" in cache, len(cache))
```

Durations are in seconds. A default expiration of zero means items never
expire unless given their own duration. `set_expiration` and `modify`
raise `KeyError` for unknown keys; if the function given to `modify`
raises, the stored value is unchanged. `on_evicted` registers a callback
run on `delete` and on expiry cleanup (not on `flush`). `list(*filters)`
and `items()` return snapshots of unexpired entries. A positive cleanup
interval starts a background thread that calls `delete_expired`; `close()`
(or leaving the `with` block) stops it.

## Health checks (`torkflow.health`)

```python
from torkflow.health import HealthCheck

result = (
    HealthCheck(version="1.0")
    .with_indicator("datastore", lambda: None)
    .do()
)
print(result.status)     # "UP"
print(result.to_dict())  # {"status": "UP", "version": "1.0"}
```

An indicator is a callable taking no arguments; if any raises, the result
is `"DOWN"`. Names must be non-blank and unique, otherwise `ValueError`.

## Engine (`torkflow.engine`)

```python
from torkflow.engine import Engine, Mode

engine = Engine(Mode.STANDALONE)
engine.register_datastore_provider("postgres", make_datastore)
engine.start()
print(engine.state)        # State.RUNNING
engine.datastore.get_user("someone")   # forwarded to the created datastore
engine.terminate()
```

The engine moves through `IDLE`, `RUNNING`, `TERMINATING` and
`TERMINATED` (`State`). Modes are `Mode.COORDINATOR`, `Mode.WORKER` and
`Mode.STANDALONE`. Setting the mode and registering middleware, endpoints,
a runtime, datastore providers or broker providers is only allowed while
idle; an operation in the wrong state, a duplicate registration or an
unknown mode raises `EngineError`.

In coordinator and standalone mode, `start()` creates the datastore named
by `engine.datastore_type` (default `"postgres"`) from a registered
provider. The `engine.datastore` property is a `DatastoreProxy` that raises
`EngineError` on use until then. `run()` starts the engine and blocks until
it is terminated or interrupted with Ctrl-C. `default_engine()` returns a
shared, process-wide instance.

## What this package does not do

The engine only tracks its lifecycle and registrations. It does not run a
coordinator, a worker, an HTTP API, a message broker or a task runtime, and
it ships no datastore: storage must come from a provider you register.
There is no command-line program.