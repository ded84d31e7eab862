import asyncio

import pytest

from app.jobs import worker


@pytest.mark.asyncio
async def test_run_worker_runs_job(monkeypatch):
    received = {}

    async def dummy_job(stop_event):
        received["stop_event"] = stop_event

    monkeypatch.setitem(worker.JOB_REGISTRY, "dummy", dummy_job)
    stop_event = asyncio.Event()

    await worker.run_worker("dummy", stop_event=stop_event)

    assert received["stop_event"] is stop_event


@pytest.mark.asyncio
async def test_run_worker_normalizes_job_name(monkeypatch):
    called = {"ok": False}

    async def dummy_job(stop_event):
        called["ok"] = True

    monkeypatch.setitem(worker.JOB_REGISTRY, "dummy", dummy_job)

    await worker.run_worker("  DUMMY ", stop_event=asyncio.Event())

    assert called["ok"] is True


@pytest.mark.asyncio
async def test_run_worker_unknown_job():
    with pytest.raises(ValueError):
        await worker.run_worker("missing", stop_event=asyncio.Event())


def test_job_name_from_env(monkeypatch):
    monkeypatch.setattr(worker.sys, "argv", ["auto-reply-worker"])
    monkeypatch.setenv("WORKER_JOB", "Auto_Reply_Once")

    assert worker._resolve_job_name() == "auto_reply_once"


def test_job_name_from_argv(monkeypatch):
    monkeypatch.setattr(worker.sys, "argv", ["auto-reply-worker", "auto_reply"])
    monkeypatch.setenv("WORKER_JOB", "auto_reply_once")

    assert worker._resolve_job_name() == "auto_reply"
