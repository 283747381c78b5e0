import pytest

from torkflow.health import STATUS_DOWN, STATUS_UP, HealthCheck


def test_health_check_ok():
    res = HealthCheck().with_indicator("test", lambda: None).do()
    assert res.status == STATUS_UP


def test_health_check_failed():
    def ind():
        raise RuntimeError("something happened")

    res = HealthCheck().with_indicator("test", ind).do()
    assert res.status == STATUS_DOWN


def test_no_indicators_is_up():
    assert HealthCheck().do().status == STATUS_UP


def test_version_is_reported():
    res = HealthCheck("1.2.3").with_indicator("ds", lambda: None).do()
    assert res.version == "1.2.3"
    assert res.to_dict() == {"status": "UP", "version": "1.2.3"}


def test_one_failing_indicator_makes_down():
    def bad():
        raise ConnectionError("no broker")

    res = (
        HealthCheck()
        .with_indicator("datastore", lambda: None)
        .with_indicator("broker", bad)
        .do()
    )
    assert res.status == STATUS_DOWN


def test_empty_name_rejected():
    with pytest.raises(ValueError, match="must not be empty"):
        HealthCheck().with_indicator("   ", lambda: None)


def test_duplicate_name_rejected():
    hc = HealthCheck().with_indicator("test", lambda: None)
    with pytest.raises(ValueError, match="already exists"):
        hc.with_indicator(" test ", lambda: None)