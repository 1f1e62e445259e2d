import pytest

from stagehand_automation.errors import ReadinessTimeout, RunCancelled, StepError, TransportError
from stagehand_automation.readiness import ReadinessGate, always_ready
from stagehand_automation.runner import StepRunner
from stagehand_automation.types import ConfigStep, HostTarget, RunnerState, RunResult

TARGET = HostTarget(name="web", address="203.0.113.4", user="ubuntu", groups=["app"])


def make_runner(session, **kwargs):
    connected = []

    def connector(target, *, dry_run, key_file):
        connected.append(target)
        return session

    kwargs.setdefault("gate", ReadinessGate(always_ready))
    runner = StepRunner(connector=connector, **kwargs)
    return runner, connected


def command(name, cmd, **kwargs):
    return ConfigStep(name=name, module="command", args={"command": cmd}, **kwargs)


def test_runs_steps_in_order(session_factory):
    session = session_factory()
    runner, connected = make_runner(session)

    run = runner.run(TARGET, [command("first", "echo one"), command("second", "echo two")])

    assert run.state is RunnerState.DONE
    assert run.ok
    assert run.transitions == [
        RunnerState.WAITING,
        RunnerState.READY,
        RunnerState.RUNNING,
        RunnerState.DONE,
    ]
    assert session.commands == ["echo one", "echo two"]
    assert run.last_successful_index == 1
    assert connected == [TARGET]
    assert session.closed is True


def test_idempotent_flag_is_reported(session_factory):
    session = session_factory()
    runner, _ = make_runner(session)

    run = runner.run(TARGET, [command("once", "echo x", idempotent=False), command("again", "echo y")])

    assert [result.idempotent for result in run.results] == [False, True]
    assert run.ok


def test_readiness_timeout_runs_no_steps(session_factory):
    session = session_factory()
    gate = ReadinessGate(lambda target: False, poll_interval=1.0, timeout=0)
    runner, connected = make_runner(session, gate=gate)

    run = runner.run(TARGET, [command("first", "echo one")])

    assert run.state is RunnerState.FAILED
    assert isinstance(run.error, ReadinessTimeout)
    assert run.results == []
    assert connected == []
    assert run.transitions == [RunnerState.WAITING, RunnerState.FAILED]
    with pytest.raises(ReadinessTimeout):
        run.raise_for_error()


def test_failed_step_stops_later_steps(session_factory):
    session = session_factory(
        [
            ("id -u deploy", 1, ""),
            ("useradd", 1, "", "useradd: cannot lock /etc/passwd; try again later."),
        ]
    )
    steps = [
        ConfigStep(name="wait_for_ssh", module="wait_for_connection"),
        command("install_docker", "install-docker"),
        ConfigStep(name="create_user", module="user", args={"name": "deploy", "groups": ["docker"]}),
        command("install_compose", "install-compose"),
        ConfigStep(name="start_containers", module="compose", args={"project_dir": "/srv/app"}),
    ]
    runner, _ = make_runner(session)

    run = runner.run(TARGET, steps)

    assert run.state is RunnerState.FAILED
    assert isinstance(run.error, StepError)
    assert run.error.step == "create_user"
    assert run.error.index == 2
    assert "cannot lock" in run.error.output
    assert run.last_successful_index == 1
    assert [result.step for result in run.results] == ["wait_for_ssh", "install_docker", "create_user"]
    assert session.ran("install-docker")
    assert not session.ran("install-compose")
    assert not session.ran("docker compose")


def test_module_errors_become_step_failures(session_factory):
    runner, _ = make_runner(session_factory())

    run = runner.run(TARGET, [ConfigStep(name="broken", module="command", args={})])

    assert isinstance(run.error, StepError)
    assert run.results[0].failed is True
    assert "requires a command" in run.results[0].details


def test_unknown_module_fails(session_factory):
    runner, _ = make_runner(session_factory())

    run = runner.run(TARGET, [ConfigStep(name="mystery", module="does-not-exist")])

    assert run.state is RunnerState.FAILED
    assert run.results[0].details == "unknown module 'does-not-exist'"


def test_selector_mismatch_is_skipped(session_factory):
    session = session_factory()
    runner, _ = make_runner(session)
    steps = [
        command("db-only", "pg_ctl start", hosts="db"),
        command("app", "echo app", hosts="app"),
    ]

    run = runner.run(TARGET, steps)

    assert run.ok
    assert run.results[0].skipped is True
    assert session.commands == ["echo app"]
    assert run.last_successful_index == 1


def test_become_runs_through_sudo(session_factory):
    session = session_factory()
    runner, _ = make_runner(session)

    run = runner.run(TARGET, [command("as-root", "apt-get update", become=True)])

    assert run.results[0].identity == "root"
    assert session.commands == ["sudo -n -H -u root -- sh -c 'apt-get update'"]


def test_login_switches_identity_for_later_steps(session_factory):
    session = session_factory([("id -u deploy", 1, "")])
    runner, _ = make_runner(session)
    steps = [
        ConfigStep(name="create_user", module="user", args={"name": "deploy", "login": True}, become=True),
        command("whoami", "whoami"),
    ]

    run = runner.run(TARGET, steps)

    assert run.ok
    assert run.results[1].identity == "deploy"
    assert session.commands[-1] == "sudo -n -H -u deploy -- sh -c whoami"


def test_identity_created_by_later_step_fails_fast(session_factory):
    session = session_factory()
    runner, _ = make_runner(session)
    steps = [
        command("start_app", "systemctl --user start app", become=True, become_user="deploy"),
        ConfigStep(name="create_user", module="user", args={"name": "deploy"}, become=True),
    ]

    run = runner.run(TARGET, steps)

    assert isinstance(run.error, StepError)
    assert run.error.index == 0
    assert "only created by step 1" in str(run.error)
    assert session.commands == []


def test_cancel_while_running_finishes_current_step(session_factory):
    session = session_factory()
    runner = None

    def on_step(target, step):
        if step.name == "first":
            runner.cancel()

    runner, _ = make_runner(session, progress_callback=on_step)

    run = runner.run(TARGET, [command("first", "echo one"), command("second", "echo two")])

    assert isinstance(run.error, RunCancelled)
    assert run.state is RunnerState.FAILED
    assert session.commands == ["echo one"]
    assert run.last_successful_index == 0


def test_cancel_while_waiting(session_factory):
    runner = StepRunner(connector=lambda *a, **k: pytest.fail("must not connect"), poll_interval=0.01, timeout=5)
    runner.gate.predicate = lambda target: runner.cancel() or False

    run = runner.run(TARGET, [command("first", "echo one")])

    assert isinstance(run.error, RunCancelled)
    assert run.transitions == [RunnerState.WAITING, RunnerState.FAILED]


def test_connect_failure_fails_run():
    def connector(target, *, dry_run, key_file):
        raise TransportError("Cannot connect to ubuntu@203.0.113.4:22: timed out")

    runner = StepRunner(connector=connector, gate=ReadinessGate(always_ready))

    run = runner.run(TARGET, [command("first", "echo one")])

    assert isinstance(run.error, TransportError)
    assert run.transitions[-2:] == [RunnerState.RUNNING, RunnerState.FAILED]


def test_variables_resolve_secrets(monkeypatch, session_factory):
    monkeypatch.setenv("APP_TOKEN", "tok-123")
    session = session_factory()
    runner, _ = make_runner(session)
    target = HostTarget(name="web", address="203.0.113.4", variables={"token": {"env": "APP_TOKEN"}})
    step = command("configure", "app-config --token $token --host $address --port $port")
    step = ConfigStep(name=step.name, module="command", args={**step.args, "vars": {"port": 8080}})

    runner.run(target, [step])

    assert session.commands == ["app-config --token tok-123 --host 203.0.113.4 --port 8080"]


def test_illegal_transition_raises():
    run = RunResult(target="web", state=RunnerState.DONE)
    with pytest.raises(RuntimeError):
        StepRunner._transition(run, RunnerState.RUNNING)
