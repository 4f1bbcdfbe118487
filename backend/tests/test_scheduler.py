from premium_ledger.jobs.scheduler import create_scheduler, get_job_status, job_defaults, run_job


def test_both_sweeps_registered():
    scheduler = create_scheduler()

    status = {job["id"]: job for job in get_job_status(scheduler)}

    assert set(status) == {"expire_cancelled_subscriptions", "distribute_monthly_coins", "prune_processed_events"}
    assert "interval" in status["expire_cancelled_subscriptions"]["trigger"]
    assert job_defaults["max_instances"] == 1


def test_failing_job_does_not_raise():
    calls = []

    def boom():
        calls.append(1)
        raise RuntimeError("database unavailable")

    run_job("boom", boom)

    assert calls == [1]
