from pathlib import Path

import pytest

from stagehand_automation.errors import PlanValidationError
from stagehand_automation.inventory import InventoryLoader

PLAN = """
[hosts.web]
user = "ubuntu"
key_file = "~/.ssh/stagehand"
groups = ["app"]

[hosts.web.variables]
registry_password = { env = "REGISTRY_PASSWORD" }

[[resources]]
kind = "vpc"
name = "main"
cidr_block = "10.0.0.0/16"

[[resources]]
kind = "subnet"
name = "public"
depends_on = "main"
attributes = { vpc_id = "${main.id}", cidr_block = "10.0.1.0/24" }

[[steps]]
name = "install_docker"
module = "package"
hosts = ["app", "db"]
become = true
args = { name = "docker.io" }

[[steps]]
name = "start_containers"
module = "compose"
become = true
become_user = "deploy"
project_dir = "/srv/app"
"""


def test_load_toml_plan(tmp_path: Path):
    path = tmp_path / "plan.toml"
    path.write_text(PLAN)

    plan = InventoryLoader().load(path)

    assert plan.base_dir == tmp_path
    web = plan.hosts["web"]
    assert web.user == "ubuntu"
    assert web.port == 22
    assert web.credential == "~/.ssh/stagehand"
    assert web.variables == {"registry_password": {"env": "REGISTRY_PASSWORD"}}
    main, public = plan.resources
    assert main.attributes == {"cidr_block": "10.0.0.0/16"}
    assert public.depends_on == ["main"]
    assert public.attributes["vpc_id"] == "${main.id}"
    install, start = plan.steps
    assert install.hosts == "app,db"
    assert install.become is True
    assert install.args == {"name": "docker.io"}
    assert start.become_user == "deploy"
    assert start.args == {"project_dir": "/srv/app"}
    assert start.idempotent is True


def test_load_yaml_plan(tmp_path: Path):
    path = tmp_path / "plan.yaml"
    path.write_text(
        """
hosts:
  local:
    connection: local
    user: runner
resources:
  - kind: vpc
    name: main
    attributes:
      cidr_block: 10.0.0.0/16
steps:
  - name: hello
    module: command
    args:
      command: echo hello
"""
    )

    plan = InventoryLoader().load(path)

    assert plan.hosts["local"].connection == "local"
    assert plan.resources[0].attributes == {"cidr_block": "10.0.0.0/16"}
    assert plan.steps[0].args["command"] == "echo hello"


def test_round_trip_through_yaml(tmp_path: Path):
    source = tmp_path / "plan.toml"
    source.write_text(PLAN)
    loader = InventoryLoader()
    plan = loader.load(source)

    dumped = tmp_path / "plan.yaml"
    loader.dump(plan, dumped)
    again = loader.load(dumped)

    assert loader.to_dict(again) == loader.to_dict(plan)


def test_round_trip_through_json(tmp_path: Path):
    source = tmp_path / "plan.toml"
    source.write_text(PLAN)
    loader = InventoryLoader()
    plan = loader.load(source)

    loader.dump(plan, tmp_path / "plan.json")

    assert loader.to_dict(loader.load(tmp_path / "plan.json")) == loader.to_dict(plan)


def test_dump_rejects_toml(tmp_path: Path):
    loader = InventoryLoader()
    with pytest.raises(ValueError):
        loader.dump(loader.from_dict({}), tmp_path / "plan.toml")


@pytest.mark.parametrize(
    "text, message",
    [
        ('[[steps]]\nname = "x"\n', "step 1 is missing a module"),
        ('[[resources]]\nname = "x"\n', "resource 1 is missing a kind"),
        ('[[resources]]\nkind = "vpc"\n', "resource 1 (vpc) is missing a name"),
        ('[hosts.web]\nconnection = "telnet"\n', "unknown connection 'telnet'"),
        (
            '[[resources]]\nkind = "vpc"\nname = "a"\n[[resources]]\nkind = "vpc"\nname = "a"\n',
            "duplicate resource names a",
        ),
        ("[[resources]\n", "plan.toml"),
    ],
)
def test_invalid_plans(tmp_path: Path, text, message):
    path = tmp_path / "plan.toml"
    path.write_text(text)

    with pytest.raises(PlanValidationError) as excinfo:
        InventoryLoader().load(path)

    assert message in str(excinfo.value)


def test_unsupported_suffix(tmp_path: Path):
    path = tmp_path / "plan.ini"
    path.write_text("[x]")
    with pytest.raises(PlanValidationError, match="unsupported plan format"):
        InventoryLoader().load(path)


def test_invalid_yaml_reports_position(tmp_path: Path):
    path = tmp_path / "plan.yaml"
    path.write_text("steps:\n  - name: [unclosed\n")
    with pytest.raises(PlanValidationError, match="plan.yaml:"):
        InventoryLoader().load(path)
