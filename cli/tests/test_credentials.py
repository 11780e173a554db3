import os
from pathlib import Path

import httpx

from pbhost_core.credentials import create_admin_account, manual_admin_instructions, wait_for_health
from pbhost_core.model import Configuration
from pbhost_core.steps import StepContext


def _ctx(fake_runner, layout, tmp_path, http=None) -> StepContext:
    config = Configuration(domain="example.com", admin_email="admin@example.com", admin_password="s3cretpass")
    return StepContext(
        config=config,
        layout=layout,
        runner=fake_runner,
        http=http or httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(200))),
        workdir=Path(tmp_path),
        sleep=lambda _s: None,
    )


def test_first_strategy_wins(fake_runner, layout, tmp_path) -> None:
    outcome = create_admin_account(_ctx(fake_runner, layout, tmp_path))
    assert outcome.created
    assert outcome.strategy == "upsert"
    assert len(outcome.attempts) == 1
    assert os.path.isdir(layout.data_dir)
    stop = fake_runner.calls.index(["systemctl", "stop", "pocketbase.service"])
    restart = fake_runner.calls.index(["systemctl", "restart", "pocketbase.service"])
    assert stop < restart


def test_falls_back_to_explicit_data_dir(fake_runner, layout, tmp_path) -> None:
    upsert = ["runuser", "-u", "pocketbase", "--", layout.binary, "superuser", "upsert"]
    fake_runner.respond(upsert, 1, 0)
    outcome = create_admin_account(_ctx(fake_runner, layout, tmp_path))
    assert outcome.created
    assert outcome.strategy == "upsert --dir"
    assert fake_runner.calls[-3][-1] == f"--dir={layout.data_dir}"


def test_temporary_serve_is_stopped(fake_runner, layout, tmp_path) -> None:
    fake_runner.respond(["runuser", "-u", "pocketbase", "--", layout.binary, "superuser", "upsert"], 1)
    outcome = create_admin_account(_ctx(fake_runner, layout, tmp_path))
    assert outcome.created
    assert outcome.strategy == "temporary serve"
    assert len(fake_runner.spawned) == 1
    assert fake_runner.spawned[0].terminated
    assert "--http=127.0.0.1:8090" in fake_runner.spawned[0].argv


def test_all_strategies_failing_is_reported(fake_runner, layout, tmp_path) -> None:
    fake_runner.respond(["runuser"], 1)
    http = httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(503)))
    ctx = _ctx(fake_runner, layout, tmp_path, http=http)
    outcome = create_admin_account(ctx)
    assert not outcome.created
    assert [a.strategy for a in outcome.attempts] == ["upsert", "upsert --dir", "temporary serve"]
    assert fake_runner.ran("systemctl", "restart", "pocketbase.service")


def test_wait_for_health_retries() -> None:
    answers = iter([503, 503, 200])
    client = httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(next(answers))))
    naps = []
    assert wait_for_health(client, "http://127.0.0.1:8090/api/health", sleep=naps.append)
    assert len(naps) == 2


def test_manual_instructions_name_the_binary(layout) -> None:
    lines = manual_admin_instructions(layout)
    assert any(layout.binary in line for line in lines)
