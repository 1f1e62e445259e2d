import pytest

from stagehand_automation.references import UNKNOWN, find_references, resolve_references
from stagehand_automation.types import ResourceState

STATES = {
    "main": ResourceState("vpc", "main", {"cidr_block": "10.0.0.0/16"}, resource_id="vpc-00000001"),
    "sg": ResourceState("security_group", "sg", {"id": "sg-00000002", "ports": [22, 80]}),
}


def test_find_references_in_nested_values():
    value = {"a": "${main.id}", "b": ["x-${sg.id}", {"c": "$plain"}]}
    assert find_references(value) == {("main", "id"), ("sg", "id")}


def test_whole_value_reference_keeps_type():
    assert resolve_references("${sg.ports}", STATES) == [22, 80]


def test_embedded_reference_is_substituted():
    assert resolve_references("net-${main.cidr_block}", STATES) == "net-10.0.0.0/16"


def test_id_falls_back_to_resource_id():
    assert resolve_references({"vpc_id": "${main.id}"}, STATES) == {"vpc_id": "vpc-00000001"}


def test_plain_dollar_names_are_left_alone():
    assert resolve_references("echo $HOME", STATES) == "echo $HOME"


def test_missing_state_raises():
    with pytest.raises(KeyError):
        resolve_references("${public.id}", STATES)


def test_missing_attribute_raises():
    with pytest.raises(KeyError):
        resolve_references("${main.public_ip}", STATES)


def test_placeholder_for_unknown_values():
    assert resolve_references("${public.id}", STATES, placeholder=UNKNOWN) == UNKNOWN
