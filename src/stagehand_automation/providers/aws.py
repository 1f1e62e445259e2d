from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping, Optional

import boto3

from .base import Provider, ResourceHandler

logger = logging.getLogger(__name__)

LIVE_INSTANCE_STATES = ["pending", "running", "stopping", "stopped"]


def _tag_specifications(resource_type: str, name: str, tags: Optional[Mapping[str, Any]]) -> list[dict[str, Any]]:
    merged = {"Name": name, **{str(k): str(v) for k, v in (tags or {}).items()}}
    return [
        {
            "ResourceType": resource_type,
            "Tags": [{"Key": key, "Value": value} for key, value in merged.items()],
        }
    ]


def _tags_from(raw: Optional[list[dict[str, str]]]) -> dict[str, str]:
    tags = {item["Key"]: item["Value"] for item in raw or []}
    tags.pop("Name", None)
    return tags


def _name_filter(name: str) -> list[dict[str, Any]]:
    return [{"Name": "tag:Name", "Values": [name]}]


def _port(value: Any) -> Any:
    # Unresolved references stay as they are during a plan.
    try:
        return int(value)
    except (TypeError, ValueError):
        return value


def _canonical_rules(rules: Iterable[Mapping[str, Any]]) -> list[dict[str, Any]]:
    """Merge ingress rules per protocol and port range, in a stable order.

    EC2 reports one permission per port range with every CIDR folded in and
    returns permissions in no particular order; declared rules may omit
    ``protocol``, ``to_port`` and ``cidr_blocks``.
    """
    merged: dict[tuple[str, Any, Any], set[str]] = {}
    for rule in rules:
        from_port = _port(rule.get("from_port"))
        to_port = _port(rule.get("to_port")) if rule.get("to_port") is not None else from_port
        cidrs = rule.get("cidr_blocks")
        if cidrs is None:
            cidrs = ["0.0.0.0/0"]
        key = (str(rule.get("protocol") or "tcp"), from_port, to_port)
        merged.setdefault(key, set()).update(str(cidr) for cidr in cidrs)
    return [
        {"protocol": protocol, "from_port": from_port, "to_port": to_port, "cidr_blocks": sorted(cidrs)}
        for (protocol, from_port, to_port), cidrs in sorted(
            merged.items(), key=lambda item: tuple(str(part) for part in item[0])
        )
        if cidrs
    ]


def _rule_entries(rules: Iterable[Mapping[str, Any]]) -> list[dict[str, Any]]:
    return [
        {**rule, "cidr_blocks": [cidr]}
        for rule in _canonical_rules(rules)
        for cidr in rule["cidr_blocks"]
    ]


class Ec2Handler(ResourceHandler):
    """Shared helpers for handlers backed by an EC2 client."""

    updatable = frozenset({"tags"})

    def __init__(self, client):
        self.client = client

    def update(
        self,
        name: str,
        current: Mapping[str, Any],
        attributes: Mapping[str, Any],
        *,
        removed: Iterable[str] = (),
    ) -> dict[str, Any]:
        removed = set(removed)
        if "tags" in attributes or "tags" in removed:
            self._sync_tags(str(current["id"]), current.get("tags") or {}, attributes.get("tags") or {})
        self.update_attributes(name, current, attributes, removed)
        refreshed = self.read(name)
        if refreshed is None:
            raise RuntimeError(f"{self.kind} '{name}' disappeared during update")
        return refreshed

    def update_attributes(
        self,
        name: str,
        current: Mapping[str, Any],
        attributes: Mapping[str, Any],
        removed: Iterable[str],
    ) -> None:
        """Hook for kinds with updatable attributes beyond tags."""

    def _sync_tags(self, resource_id: str, current: Mapping[str, Any], desired: Mapping[str, Any]) -> None:
        stale = [key for key in current if key not in desired]
        changed = {str(k): str(v) for k, v in desired.items() if current.get(k) != v}
        if stale:
            self.client.delete_tags(Resources=[resource_id], Tags=[{"Key": key} for key in stale])
        if changed:
            self.client.create_tags(
                Resources=[resource_id],
                Tags=[{"Key": key, "Value": value} for key, value in changed.items()],
            )


class VpcHandler(Ec2Handler):
    kind = "vpc"

    def read(self, name: str) -> Optional[dict[str, Any]]:
        response = self.client.describe_vpcs(Filters=_name_filter(name))
        vpcs = response.get("Vpcs", [])
        if not vpcs:
            return None
        vpc = vpcs[0]
        return {
            "id": vpc["VpcId"],
            "cidr_block": vpc["CidrBlock"],
            "tags": _tags_from(vpc.get("Tags")),
        }

    def create(self, name: str, attributes: Mapping[str, Any]) -> dict[str, Any]:
        response = self.client.create_vpc(
            CidrBlock=str(attributes["cidr_block"]),
            TagSpecifications=_tag_specifications("vpc", name, attributes.get("tags")),
        )
        vpc_id = response["Vpc"]["VpcId"]
        self.client.get_waiter("vpc_available").wait(VpcIds=[vpc_id])
        logger.debug("vpc=%s id=%s created", name, vpc_id)
        return {
            "id": vpc_id,
            "cidr_block": response["Vpc"]["CidrBlock"],
            "tags": dict(attributes.get("tags") or {}),
        }

    def delete(self, name: str, current: Mapping[str, Any]) -> None:
        self.client.delete_vpc(VpcId=str(current["id"]))


class SubnetHandler(Ec2Handler):
    kind = "subnet"
    updatable = frozenset({"tags", "map_public_ip_on_launch"})

    def read(self, name: str) -> Optional[dict[str, Any]]:
        response = self.client.describe_subnets(Filters=_name_filter(name))
        subnets = response.get("Subnets", [])
        if not subnets:
            return None
        subnet = subnets[0]
        return {
            "id": subnet["SubnetId"],
            "vpc_id": subnet["VpcId"],
            "cidr_block": subnet["CidrBlock"],
            "availability_zone": subnet.get("AvailabilityZone"),
            "map_public_ip_on_launch": bool(subnet.get("MapPublicIpOnLaunch", False)),
            "tags": _tags_from(subnet.get("Tags")),
        }

    def create(self, name: str, attributes: Mapping[str, Any]) -> dict[str, Any]:
        params: dict[str, Any] = {
            "VpcId": str(attributes["vpc_id"]),
            "CidrBlock": str(attributes["cidr_block"]),
            "TagSpecifications": _tag_specifications("subnet", name, attributes.get("tags")),
        }
        if attributes.get("availability_zone"):
            params["AvailabilityZone"] = str(attributes["availability_zone"])
        response = self.client.create_subnet(**params)
        subnet_id = response["Subnet"]["SubnetId"]
        if attributes.get("map_public_ip_on_launch"):
            self.client.modify_subnet_attribute(
                SubnetId=subnet_id, MapPublicIpOnLaunch={"Value": True}
            )
        created = self.read(name)
        return created if created is not None else {"id": subnet_id, **dict(attributes)}

    def update_attributes(
        self,
        name: str,
        current: Mapping[str, Any],
        attributes: Mapping[str, Any],
        removed: Iterable[str],
    ) -> None:
        if "map_public_ip_on_launch" in attributes or "map_public_ip_on_launch" in removed:
            desired = bool(attributes.get("map_public_ip_on_launch", False))
            if desired != bool(current.get("map_public_ip_on_launch")):
                self.client.modify_subnet_attribute(
                    SubnetId=str(current["id"]), MapPublicIpOnLaunch={"Value": desired}
                )

    def delete(self, name: str, current: Mapping[str, Any]) -> None:
        self.client.delete_subnet(SubnetId=str(current["id"]))


class SecurityGroupHandler(Ec2Handler):
    kind = "security_group"
    updatable = frozenset({"tags", "ingress"})

    def normalize(self, attributes: Mapping[str, Any]) -> dict[str, Any]:
        normalized = dict(attributes)
        if "ingress" in normalized:
            normalized["ingress"] = _canonical_rules(normalized["ingress"] or [])
        return normalized

    def read(self, name: str) -> Optional[dict[str, Any]]:
        response = self.client.describe_security_groups(
            Filters=[{"Name": "group-name", "Values": [name]}]
        )
        groups = response.get("SecurityGroups", [])
        if not groups:
            return None
        group = groups[0]
        return {
            "id": group["GroupId"],
            "vpc_id": group.get("VpcId"),
            "description": group.get("Description", ""),
            "ingress": _canonical_rules(self._rule_from(item) for item in group.get("IpPermissions", [])),
            "tags": _tags_from(group.get("Tags")),
        }

    def create(self, name: str, attributes: Mapping[str, Any]) -> dict[str, Any]:
        response = self.client.create_security_group(
            GroupName=name,
            Description=str(attributes.get("description") or name),
            VpcId=str(attributes["vpc_id"]),
            TagSpecifications=_tag_specifications("security-group", name, attributes.get("tags")),
        )
        group_id = response["GroupId"]
        rules = _canonical_rules(attributes.get("ingress") or [])
        if rules:
            self.client.authorize_security_group_ingress(
                GroupId=group_id, IpPermissions=[self._permission_from(rule) for rule in rules]
            )
        created = self.read(name)
        return created if created is not None else {"id": group_id, **dict(attributes)}

    def update_attributes(
        self,
        name: str,
        current: Mapping[str, Any],
        attributes: Mapping[str, Any],
        removed: Iterable[str],
    ) -> None:
        if "ingress" not in attributes and "ingress" not in removed:
            return
        have = _rule_entries(current.get("ingress") or [])
        want = _rule_entries(attributes.get("ingress") or [])
        group_id = str(current["id"])
        stale = _canonical_rules(entry for entry in have if entry not in want)
        missing = _canonical_rules(entry for entry in want if entry not in have)
        if stale:
            self.client.revoke_security_group_ingress(
                GroupId=group_id, IpPermissions=[self._permission_from(rule) for rule in stale]
            )
        if missing:
            self.client.authorize_security_group_ingress(
                GroupId=group_id, IpPermissions=[self._permission_from(rule) for rule in missing]
            )
        logger.debug("security_group=%s revoked=%d authorized=%d", name, len(stale), len(missing))

    def delete(self, name: str, current: Mapping[str, Any]) -> None:
        self.client.delete_security_group(GroupId=str(current["id"]))

    @staticmethod
    def _permission_from(rule: Mapping[str, Any]) -> dict[str, Any]:
        permission: dict[str, Any] = {
            "IpProtocol": str(rule["protocol"]),
            "IpRanges": [{"CidrIp": cidr} for cidr in rule["cidr_blocks"]],
        }
        if rule.get("from_port") is not None:
            permission["FromPort"] = int(rule["from_port"])
        if rule.get("to_port") is not None:
            permission["ToPort"] = int(rule["to_port"])
        return permission

    @staticmethod
    def _rule_from(permission: Mapping[str, Any]) -> dict[str, Any]:
        return {
            "protocol": permission.get("IpProtocol"),
            "from_port": permission.get("FromPort"),
            "to_port": permission.get("ToPort"),
            "cidr_blocks": [item["CidrIp"] for item in permission.get("IpRanges", [])],
        }


class InstanceHandler(Ec2Handler):
    kind = "instance"
    write_only = frozenset({"user_data"})

    def read(self, name: str) -> Optional[dict[str, Any]]:
        response = self.client.describe_instances(
            Filters=_name_filter(name)
            + [{"Name": "instance-state-name", "Values": LIVE_INSTANCE_STATES}]
        )
        for reservation in response.get("Reservations", []):
            for instance in reservation.get("Instances", []):
                return self._attributes_from(instance)
        return None

    def create(self, name: str, attributes: Mapping[str, Any]) -> dict[str, Any]:
        interface: dict[str, Any] = {
            "DeviceIndex": 0,
            "SubnetId": str(attributes["subnet_id"]),
            "AssociatePublicIpAddress": bool(attributes.get("associate_public_ip_address", True)),
        }
        if attributes.get("security_group_ids"):
            interface["Groups"] = [str(group) for group in attributes["security_group_ids"]]
        params: dict[str, Any] = {
            "ImageId": str(attributes["ami"]),
            "InstanceType": str(attributes.get("instance_type", "t3.micro")),
            "MinCount": 1,
            "MaxCount": 1,
            "NetworkInterfaces": [interface],
            "TagSpecifications": _tag_specifications("instance", name, attributes.get("tags")),
        }
        if attributes.get("key_name"):
            params["KeyName"] = str(attributes["key_name"])
        if attributes.get("user_data"):
            params["UserData"] = str(attributes["user_data"])
        response = self.client.run_instances(**params)
        instance_id = response["Instances"][0]["InstanceId"]
        logger.debug("instance=%s id=%s waiting for running state", name, instance_id)
        self.client.get_waiter("instance_running").wait(InstanceIds=[instance_id])
        created = self.read(name)
        if created is None:
            raise RuntimeError(f"instance '{name}' ({instance_id}) not found after launch")
        return created

    def delete(self, name: str, current: Mapping[str, Any]) -> None:
        instance_id = str(current["id"])
        self.client.terminate_instances(InstanceIds=[instance_id])
        self.client.get_waiter("instance_terminated").wait(InstanceIds=[instance_id])

    @staticmethod
    def _attributes_from(instance: Mapping[str, Any]) -> dict[str, Any]:
        attributes: dict[str, Any] = {
            "id": instance["InstanceId"],
            "ami": instance.get("ImageId"),
            "instance_type": instance.get("InstanceType"),
            "subnet_id": instance.get("SubnetId"),
            "security_group_ids": [group["GroupId"] for group in instance.get("SecurityGroups", [])],
            "associate_public_ip_address": bool(instance.get("PublicIpAddress")),
            "state": instance.get("State", {}).get("Name"),
            "private_ip": instance.get("PrivateIpAddress"),
            "public_ip": instance.get("PublicIpAddress"),
            "tags": _tags_from(instance.get("Tags")),
        }
        if instance.get("KeyName"):
            attributes["key_name"] = instance["KeyName"]
        return attributes


class AwsProvider(Provider):
    """Provider backed by the EC2 API; resources are matched by their ``Name`` tag."""

    name = "aws"

    def __init__(self, *, region: Optional[str] = None, profile: Optional[str] = None, client=None):
        if client is None:
            session = boto3.session.Session(profile_name=profile, region_name=region)
            client = session.client("ec2")
        self.client = client
        super().__init__(
            {
                "vpc": VpcHandler(client),
                "subnet": SubnetHandler(client),
                "security_group": SecurityGroupHandler(client),
                "instance": InstanceHandler(client),
            }
        )
