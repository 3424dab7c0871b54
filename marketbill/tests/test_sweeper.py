"""Expiration sweeper tests."""
import pytest

from marketbill.features.subscriptions import ledger, sweeper
from marketbill.features.subscriptions.sweeper import run_sweep
from marketbill.features.notifications.ports import set_notifier
from marketbill.tests.mocks import ExplodingNotifier
from marketbill.workers.expiration_sweep import main as sweep_worker_main


@pytest.fixture
def plan(make_plan):
    return make_plan(name="Pro", price=19.0)


def test_overdue_subscription_expires_once(make_user, make_subscription, plan, analytics):
    make_user("alice")
    sub_id = make_subscription("alice", plan.plan_id, days_left=-1)

    first = run_sweep()
    second = run_sweep()

    assert first.expired_count == 1
    assert second.expired_count == 0
    assert ledger.get_subscription(sub_id).status == "expired"
    assert analytics.types() == ["subscription_expired"]
    assert analytics.events[0][2]["plan_name"] == "Pro"


def test_cancelled_rows_are_left_alone(make_user, make_subscription, plan):
    make_user("alice")
    sub_id = make_subscription("alice", plan.plan_id, status="cancelled", days_left=-1)

    assert run_sweep().expired_count == 0
    assert ledger.get_subscription(sub_id).status == "cancelled"


def test_reminder_only_for_auto_renewing_rows_in_window(make_user, make_subscription, plan, notifier):
    make_user("alice")
    make_user("bob")
    make_user("carol")
    make_subscription("alice", plan.plan_id, days_left=2)
    make_subscription("bob", plan.plan_id, days_left=2, auto_renew=False)
    make_subscription("carol", plan.plan_id, days_left=20)

    result = run_sweep(lookahead_days=3)

    assert result.expiring_count == 1
    assert [(user, kind) for user, kind, _ in notifier.sent] == [("alice", "subscription_expiring")]
    assert "Pro subscription expires in 3 days" in notifier.sent[0][2]["message"]


def test_reminder_repeats_on_every_run(make_user, make_subscription, plan, notifier):
    make_user("alice")
    make_subscription("alice", plan.plan_id, days_left=1)

    run_sweep(lookahead_days=3)
    run_sweep(lookahead_days=3)

    assert notifier.kinds() == ["subscription_expiring", "subscription_expiring"]


def test_overlapping_run_is_skipped(make_user, make_subscription, plan):
    make_user("alice")
    make_subscription("alice", plan.plan_id, days_left=-1)

    sweeper._sweep_lock.acquire()
    try:
        result = run_sweep()
    finally:
        sweeper._sweep_lock.release()

    assert result.skipped is True
    assert result.expired_count == 0
    assert run_sweep().expired_count == 1


def test_reminder_failure_does_not_stop_expiry(make_user, make_subscription, plan):
    set_notifier(ExplodingNotifier())
    make_user("alice")
    make_user("bob")
    make_subscription("alice", plan.plan_id, days_left=1)
    make_subscription("bob", plan.plan_id, days_left=-1)

    result = run_sweep(lookahead_days=3)

    assert result.expiring_count == 1
    assert result.expired_count == 1


def test_worker_once(make_user, make_subscription, plan, capsys):
    make_user("alice")
    make_subscription("alice", plan.plan_id, days_left=-1)

    sweep_worker_main(["--once", "--lookahead-days", "3"])

    assert "expired=1" in capsys.readouterr().out
