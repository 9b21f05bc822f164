"""Cloud instance metadata: provider detection and the AWS, GCP and Azure services."""

from __future__ import annotations

import json
import logging
import urllib.error
import urllib.parse
import urllib.request
from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

log = logging.getLogger(__name__)

METADATA_SERVICE_TIMEOUT = 5.0

HYPERVISOR_UUID_PATH = "/sys/hypervisor/uuid"
BOARD_VENDOR_PATH = "/sys/class/dmi/id/board_vendor"

_METADATA_HOST = "http://169.254.169.254"
AZURE_ENDPOINT = _METADATA_HOST + "/metadata/instance"
_AZURE_API_VERSION = "2021-05-01"
_AWS_SESSION_URL = _METADATA_HOST + "/latest/api/token"
_AWS_METADATA_URL = _METADATA_HOST + "/latest/meta-data/"
_AWS_SESSION_TTL_SECONDS = 21600
_AWS_SESSION_TTL_HEADER = "X-aws-ec2-metadata-token-ttl-seconds"
_AWS_SESSION_HEADER = "X-aws-ec2-metadata-token"
_GCP_METADATA_URL = _METADATA_HOST + "/computeMetadata/v1/"

_GCP_PATHS = (
    "project/project-id",
    "instance/id",
    "instance/network-interfaces/0/ip",
    "instance/network-interfaces/0/access-configs/0/external-ip",
    "instance/scheduling/preemptible",
    "instance/machine-type",
    "instance/zone",
)


class CloudProvider(StrEnum):
    AWS = "AWS"
    GCP = "GCP"
    AZURE = "Azure"
    UNKNOWN = ""


@dataclass
class CloudMetadata:
    provider: CloudProvider = CloudProvider.UNKNOWN
    account_id: str = ""
    instance_id: str = ""
    instance_type: str = ""
    life_cycle: str = ""
    region: str = ""
    availability_zone: str = ""
    availability_zone_id: str = ""
    local_ipv4: str = ""
    public_ipv4: str = ""


class _MetadataServiceError(OSError):
    """The metadata service answered with an unexpected status."""


def _fetch(url: str, headers: Mapping[str, str], method: str = "GET") -> bytes:
    request = urllib.request.Request(url, headers=dict(headers), method=method)
    with urllib.request.urlopen(request, timeout=METADATA_SERVICE_TIMEOUT) as response:
        status = getattr(response, "status", 200)
        body = response.read()
    if status != 200:
        raise _MetadataServiceError(f"metadata service response: {status}")
    return body


def _decode(raw: bytes) -> str:
    return raw.decode("utf-8", errors="replace")


def _read_text(path: str) -> str | None:
    try:
        with open(path, encoding="utf-8", errors="replace") as f:
            return f.read()
    except OSError:
        return None


def get_cloud_provider(
    hypervisor_uuid_path: str = HYPERVISOR_UUID_PATH,
    board_vendor_path: str = BOARD_VENDOR_PATH,
) -> CloudProvider:
    """Guess the cloud provider from the hypervisor UUID and the DMI board vendor."""
    uuid = _read_text(hypervisor_uuid_path)
    if uuid is not None and uuid.lower().startswith("ec2"):  # AWS Xen instances
        return CloudProvider.AWS
    vendor = _read_text(board_vendor_path)
    if vendor is not None:
        match vendor.strip():
            case "Amazon EC2":
                return CloudProvider.AWS
            case "Google":
                return CloudProvider.GCP
            case "Microsoft Corporation":
                return CloudProvider.AZURE
    return CloudProvider.UNKNOWN


def get_instance_metadata() -> CloudMetadata | None:
    """Metadata of the instance the agent runs on, or None outside a known cloud."""
    provider = get_cloud_provider()
    log.info("cloud provider: %s", provider.value)
    match provider:
        case CloudProvider.AWS:
            return get_aws_metadata()
        case CloudProvider.GCP:
            return get_gcp_metadata()
        case CloudProvider.AZURE:
            return get_azure_metadata()
    return None


def _aws_session() -> str | None:
    """Open an IMDSv2 session; None if the service does not hand one out."""
    try:
        raw = _fetch(
            _AWS_SESSION_URL,
            {_AWS_SESSION_TTL_HEADER: str(_AWS_SESSION_TTL_SECONDS)},
            method="PUT",
        )
    except OSError as exc:
        log.warning("failed to open IMDS session: %s", exc)
        return None
    return _decode(raw) or None


def get_aws_metadata() -> CloudMetadata:
    """Query the EC2 instance metadata service; unreadable values are left empty."""
    session = _aws_session()
    headers = {_AWS_SESSION_HEADER: session} if session else {}

    def variable(path: str) -> str:
        try:
            return _decode(_fetch(_AWS_METADATA_URL + path, headers))
        except OSError as exc:
            log.error("%s %s", path, exc)
            return ""

    md = CloudMetadata(
        provider=CloudProvider.AWS,
        instance_id=variable("instance-id"),
        life_cycle=variable("instance-life-cycle"),
        instance_type=variable("instance-type"),
        region=variable("placement/region"),
        availability_zone=variable("placement/availability-zone"),
        availability_zone_id=variable("placement/availability-zone-id"),
        local_ipv4=variable("local-ipv4"),
        public_ipv4=variable("public-ipv4"),
    )
    if info_json := variable("identity-credentials/ec2/info"):
        try:
            info = json.loads(info_json)
            if not isinstance(info, dict) or any(
                v is not None and not isinstance(v, str) for v in info.values()
            ):
                raise ValueError(f"unexpected identity info: {info_json!r}")
        except ValueError as exc:
            log.error("%s", exc)
        else:
            md.account_id = info.get("AccountId") or ""
    return md


def _field(obj: dict[str, Any], name: str) -> Any:
    if name in obj:
        return obj[name]
    lowered = name.lower()
    return next((v for k, v in obj.items() if k.lower() == lowered), None)


def _object(value: Any, what: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"{what}: expected an object")
    return value


def _array(value: Any, what: str) -> list[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"{what}: expected an array")
    return value


def _string(value: Any, what: str) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"{what}: expected a string")
    return value


def azure_metadata_from_json(payload: str | bytes) -> CloudMetadata:
    """Build CloudMetadata from an Azure instance metadata document; raise ValueError if malformed."""
    doc = _object(json.loads(payload), "document")
    compute = _object(_field(doc, "compute"), "compute")
    network = _object(_field(doc, "network"), "network")
    interfaces = [
        _object(item, "interface") for item in _array(_field(network, "interface"), "interface")
    ]
    addresses_by_interface = [
        [
            _object(ip, "ipAddress")
            for ip in _array(
                _field(_object(_field(iface, "ipv4"), "ipv4"), "ipAddress"), "ipAddress"
            )
        ]
        for iface in interfaces
    ]
    md = CloudMetadata(
        provider=CloudProvider.AZURE,
        account_id=_string(_field(compute, "subscriptionId"), "subscriptionId"),
        instance_id=_string(_field(compute, "vmID"), "vmID"),
        instance_type=_string(_field(compute, "vmSize"), "vmSize"),
        region=_string(_field(compute, "location"), "location"),
        availability_zone=_string(_field(compute, "zone"), "zone"),
    )
    if addresses_by_interface and addresses_by_interface[0]:
        first = addresses_by_interface[0][0]
        md.local_ipv4 = _string(_field(first, "privateIpAddress"), "privateIpAddress")
        md.public_ipv4 = _string(_field(first, "publicIpAddress"), "publicIpAddress")
    return md


def get_azure_metadata() -> CloudMetadata | None:
    """Query the Azure instance metadata service; None if it cannot be read."""
    query = urllib.parse.urlencode({"api-version": _AZURE_API_VERSION, "format": "json"})
    try:
        body = _fetch(f"{AZURE_ENDPOINT}?{query}", {"Metadata": "True"})
    except OSError as exc:
        log.error("%s", exc)
        return None
    try:
        return azure_metadata_from_json(body)
    except ValueError as exc:
        log.error("failed to unmarshall response of Azure metadata service: %s", exc)
        return None


def gcp_metadata_from_values(values: Mapping[str, str]) -> CloudMetadata:
    """Build CloudMetadata from GCP metadata values keyed by their path."""

    def get(path: str) -> str:
        return values.get(path, "") or ""

    md = CloudMetadata(
        provider=CloudProvider.GCP,
        account_id=get("project/project-id"),
        instance_id=get("instance/id"),
        local_ipv4=get("instance/network-interfaces/0/ip"),
        public_ipv4=get("instance/network-interfaces/0/access-configs/0/external-ip"),
    )
    match get("instance/scheduling/preemptible").lower():
        case "false":
            md.life_cycle = "on-demand"
        case "true":
            md.life_cycle = "preemptible"

    # projects/PROJECT_NUM/machineTypes/MACHINE_TYPE
    if len(parts := get("instance/machine-type").split("/", 3)) == 4:
        md.instance_type = parts[3]

    # projects/PROJECT_NUM/zones/ZONE
    if len(parts := get("instance/zone").split("/", 3)) == 4:
        md.availability_zone = parts[3]
        zone, sep, _ = md.availability_zone.rpartition("-")
        if sep:
            md.region = zone
    return md


def _gcp_variable(path: str) -> str:
    try:
        return _decode(_fetch(_GCP_METADATA_URL + path, {"Metadata-Flavor": "Google"}))
    except OSError as exc:
        log.error("%s %s", path, exc)
        return ""


def get_gcp_metadata() -> CloudMetadata:
    """Query the GCE metadata server; unreadable values are left empty."""
    return gcp_metadata_from_values({path: _gcp_variable(path) for path in _GCP_PATHS})