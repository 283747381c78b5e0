import pytest

from torkflow.models import (
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
from torkflow.validate import (
    FieldError,
    ValidationError,
    parse_duration,
    valid_cron,
    valid_expr,
    valid_queue,
    validate_job,
    validate_scheduled_job,
)


class FakeDatastore:
    def __init__(self, users=(), roles=()):
        self.users = set(users)
        self.roles = set(roles)

    def get_user(self, username):
        if username not in self.users:
            raise KeyError(username)
        return username

    def get_role(self, slug):
        if slug not in self.roles:
            raise KeyError(slug)
        return slug


@pytest.fixture
def ds():
    return FakeDatastore(users={"alice"}, roles={"public"})


def job_with(*tasks, **kwargs):
    return Job(name="test job", tasks=list(tasks), **kwargs)


def tags(exc_info):
    return [e.tag for e in exc_info.value.errors]


def test_min_job(ds):
    assert validate_job(job_with(Task(name="test task", image="some:image")), ds) is None


def test_job_no_tasks(ds):
    with pytest.raises(ValidationError) as exc:
        validate_job(Job(name="test job", tasks=[]), ds)
    assert exc.value.errors[0] == FieldError("job.tasks", "tasks", "required")


def test_queue(ds):
    validate_job(job_with(Task(name="test task", image="some:image", queue="urgent")), ds)
    with pytest.raises(ValidationError) as exc:
        validate_job(job_with(Task(name="test task", image="some:image", queue="x-788222")), ds)
    assert tags(exc) == ["queue"]
    with pytest.raises(ValidationError):
        validate_job(job_with(Task(name="test task", image="some:image", queue="jobs")), ds)


def test_task_no_name(ds):
    with pytest.raises(ValidationError) as exc:
        validate_job(job_with(Task(image="some:image")), ds)
    assert exc.value.errors[0].namespace == "job.tasks[0].name"
    assert exc.value.errors[0].tag == "required"


def test_job_no_name(ds):
    with pytest.raises(ValidationError) as exc:
        validate_job(Job(tasks=[Task(name="t", image="some:image")]), ds)
    assert exc.value.errors[0].field == "name"


def test_var(ds):
    validate_job(job_with(Task(name="test task", var="somevar")), ds)
    validate_job(job_with(Task(name="test task", var="a" * 64)), ds)
    with pytest.raises(ValidationError) as exc:
        validate_job(job_with(Task(name="test task", var="a" * 65)), ds)
    assert tags(exc) == ["max"]


def test_job_defaults(ds):
    job = job_with(Task(name="some task", image="some:image"), defaults=Defaults(timeout="1234"))
    with pytest.raises(ValidationError) as exc:
        validate_job(job, ds)
    assert exc.value.errors[0].field == "timeout"
    assert exc.value.errors[0].tag == "duration"


def test_task_no_image(ds):
    assert validate_job(job_with(Task(name="some task")), ds) is None


def test_task_retry(ds):
    validate_job(job_with(Task(name="test task", image="some:image", retry=Retry(limit=5))), ds)
    with pytest.raises(ValidationError) as exc:
        validate_job(job_with(Task(name="test task", image="some:image", retry=Retry(limit=50))), ds)
    assert tags(exc) == ["max"]


def test_task_timeout(ds):
    assert validate_job(job_with(Task(name="test task", image="some:image", timeout="6h")), ds) is None


def test_subjob(ds):
    task = Task(
        name="test task",
        subjob=SubJob(
            name="test sub job",
            webhooks=[Webhook(url="http://example.com")],
            tasks=[Task(name="test task", image="some task")],
        ),
    )
    assert validate_job(job_with(task), ds) is None


def test_subjob_bad_webhook(ds):
    task = Task(
        name="test task",
        subjob=SubJob(
            name="test sub job",
            webhooks=[Webhook(url="")],
            tasks=[Task(name="test task", image="some task")],
        ),
    )
    with pytest.raises(ValidationError) as exc:
        validate_job(job_with(task), ds)
    assert exc.value.errors[0].namespace == "job.tasks[0].subjob.webhooks[0].url"


def test_parallel_or_each(ds):
    inner = Task(name="test task", image="some task")
    validate_job(job_with(Task(name="test task", each=Each(list="5+5", task=inner))), ds)
    validate_job(job_with(Task(name="test task", parallel=Parallel(tasks=[inner]))), ds)
    both = Task(
        name="test task",
        image="some:image",
        timeout="6h",
        each=Each(list="some expression", task=inner),
        parallel=Parallel(tasks=[inner]),
    )
    with pytest.raises(ValidationError) as exc:
        validate_job(job_with(both), ds)
    assert "paralleloreach" in tags(exc)
    assert "invalidcompositetask" in tags(exc)


def test_parallel_or_subjob(ds):
    inner = Task(name="test task", image="some task")
    validate_job(job_with(Task(name="test task", parallel=Parallel(tasks=[inner]))), ds)
    both = Task(
        name="test task",
        image="some:image",
        parallel=Parallel(tasks=[inner]),
        subjob=SubJob(name="test sub job", tasks=[inner]),
    )
    with pytest.raises(ValidationError) as exc:
        validate_job(job_with(both), ds)
    assert tags(exc).count("parallelorsubjob") == 2


def test_each_and_subjob(ds):
    inner = Task(name="test task", image="some task")
    both = Task(
        name="test task",
        each=Each(list="1+1", task=inner),
        subjob=SubJob(name="sub", tasks=[inner]),
    )
    with pytest.raises(ValidationError) as exc:
        validate_job(job_with(both), ds)
    assert tags(exc) == ["eachorsubjob", "eachorsubjob"]


def test_empty_parallel(ds):
    with pytest.raises(ValidationError) as exc:
        validate_job(job_with(Task(name="t", parallel=Parallel(tasks=[]))), ds)
    assert exc.value.errors[0].namespace == "job.tasks[0].parallel.tasks"


@pytest.mark.parametrize(
    "expression,ok",
    [("1+1", True), ("{{1+1}}", True), ("{1+1", False)],
)
def test_expr_in_each(ds, expression, ok):
    task = Task(name="test task", each=Each(list=expression, task=Task(name="test task", image="some:image")))
    if ok:
        assert validate_job(job_with(task), ds) is None
    else:
        with pytest.raises(ValidationError) as exc:
            validate_job(job_with(task), ds)
        assert tags(exc) == ["expr"]


def mount_job(mount):
    return job_with(Task(name="test task", image="some:image", run="some script", mounts=[mount]))


@pytest.mark.parametrize(
    "mount,tag",
    [
        (Mount(type="", target=""), "typerequired"),
        (Mount(type="volume", target="/some/target"), None),
        (Mount(type="custom", target="/some/target"), None),
        (Mount(type="bind", source="", target="/some/target"), "sourcerequired"),
        (Mount(type="bind", source="/some/source", target="/some/target"), None),
        (Mount(type="bind", source="/some#/source", target="/some/target"), "invalidsource"),
        (Mount(type="bind", source="/some/source", target="/some:/target"), "invalidtarget"),
        (Mount(type="bind", source="/some/source", target="/tork"), "invalidtarget"),
        (Mount(type="bind", source="bucket=some-bucket path=/mnt/some-path", target="/some/path"), None),
        (Mount(type="volume", source="/x", target="/y"), "sourcenotempty"),
        (Mount(type="volume"), "targetrequired"),
    ],
)
def test_mounts(ds, mount, tag):
    if tag is None:
        assert validate_job(mount_job(mount), ds) is None
    else:
        with pytest.raises(ValidationError) as exc:
            validate_job(mount_job(mount), ds)
        assert tags(exc) == [tag]


def test_webhook(ds):
    task = Task(name="test task", image="some:image")
    validate_job(job_with(task, webhooks=[Webhook(url="http://example.com")]), ds)
    with pytest.raises(ValidationError) as exc:
        validate_job(job_with(task, webhooks=[Webhook(url="")]), ds)
    assert exc.value.errors[0].namespace == "job.webhooks[0].url"


def test_permissions(ds):
    task = Task(name="test task", image="some:image")
    validate_job(job_with(task, permissions=[Permission(user="alice")]), ds)
    validate_job(job_with(task, permissions=[Permission(role="public")]), ds)
    with pytest.raises(ValidationError) as exc:
        validate_job(job_with(task, permissions=[Permission()]), ds)
    assert tags(exc) == ["roleoruser"]
    with pytest.raises(ValidationError) as exc:
        validate_job(job_with(task, permissions=[Permission(user="bob")]), ds)
    assert tags(exc) == ["invalidusername"]
    with pytest.raises(ValidationError) as exc:
        validate_job(job_with(task, permissions=[Permission(role="admins")]), ds)
    assert tags(exc) == ["invalidrole"]
    with pytest.raises(ValidationError) as exc:
        validate_job(job_with(task, permissions=[Permission(user="alice", role="public")]), ds)
    assert tags(exc) == ["roleoruser"]


def test_wait_timeout_required(ds):
    task = Task(name="test task", image="some:image")
    validate_job(job_with(task, wait=Wait(timeout="1s")), ds)
    with pytest.raises(ValidationError) as exc:
        validate_job(job_with(task, wait=Wait()), ds)
    assert tags(exc) == ["required"]


def test_aux_and_sidecar_names(ds):
    task = Task(
        name="t",
        image="some:image",
        pre=[AuxTask()],
        sidecars=[SidecarTask(name="s", probe=Probe(path="/health", port=0))],
    )
    with pytest.raises(ValidationError) as exc:
        validate_job(job_with(task), ds)
    assert [e.namespace for e in exc.value.errors] == [
        "job.tasks[0].pre[0].name",
        "job.tasks[0].sidecars[0].probe.port",
    ]


def test_priority_bounds(ds):
    validate_job(job_with(Task(name="t", priority=9)), ds)
    with pytest.raises(ValidationError) as exc:
        validate_job(job_with(Task(name="t", priority=10)), ds)
    assert tags(exc) == ["max"]


def test_scheduled_job(ds):
    task = Task(name="t", image="some:image")
    validate_scheduled_job(ScheduledJob(name="s", tasks=[task], schedule=Schedule(cron="0 0 * * *")), ds)
    with pytest.raises(ValidationError) as exc:
        validate_scheduled_job(ScheduledJob(name="s", tasks=[task]), ds)
    assert tags(exc) == ["required"]
    with pytest.raises(ValidationError) as exc:
        validate_scheduled_job(ScheduledJob(name="s", tasks=[task], schedule=Schedule(cron="bad")), ds)
    assert tags(exc) == ["cron"]


@pytest.mark.parametrize(
    "cron,ok",
    [
        ("0 0 * * *", True),
        ("0/10 0 * * *", True),
        ("invalid-cron", False),
        ("", False),
        ("0 0 0 * * *", False),
        ("0 0 0 0 * * *", False),
        ("*/15 9-17 * jan-jun mon-fri", True),
        ("@daily", True),
        ("@every 1h30m", True),
        ("@every nonsense", False),
        ("TZ=UTC 0 0 * * *", True),
        ("60 0 * * *", False),
        ("5-1 * * * *", False),
        ("*/0 * * * *", False),
        ("0 0 * * 7", False),
    ],
)
def test_valid_cron(cron, ok):
    assert valid_cron(cron) is ok


@pytest.mark.parametrize(
    "text,seconds",
    [("6h", 21600.0), ("1h30m", 5400.0), ("300ms", 0.3), ("-1.5h", -5400.0), ("0", 0.0), ("2s500ms", 2.5)],
)
def test_parse_duration(text, seconds):
    assert parse_duration(text) == pytest.approx(seconds)


@pytest.mark.parametrize("text", ["", "1234", "5x", ".s", "h"])
def test_parse_duration_invalid(text):
    with pytest.raises(ValueError):
        parse_duration(text)


@pytest.mark.parametrize(
    "name,ok",
    [("", True), ("urgent", True), ("x-788222", False), ("jobs", False), ("pending", False)],
)
def test_valid_queue(name, ok):
    assert valid_queue(name) is ok


@pytest.mark.parametrize(
    "expression,ok",
    [
        ("1+1", True),
        ("{{1+1}}", True),
        ("5+5", True),
        ("inputs.x == 'a' && len(tasks.y) > 0", True),
        ("x in [1, 2, 3] ? 'yes' : 'no'", True),
        ("filter(items, {# > 1})", True),
        ("{1+1", False),
        ("1 +", False),
        ("(1", False),
        ("some expression", False),
        ("", False),
    ],
)
def test_valid_expr(expression, ok):
    assert valid_expr(expression) is ok


def test_validation_error_message(ds):
    with pytest.raises(ValidationError) as exc:
        validate_job(Job(tasks=[]), ds)
    assert "job.name" in str(exc.value)
    assert isinstance(exc.value, ValueError)