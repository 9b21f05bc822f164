import json
import urllib.error
from unittest import mock

import pytest

from nodeagent.metadata import (
    CloudMetadata,
    CloudProvider,
    azure_metadata_from_json,
    gcp_metadata_from_values,
    get_aws_metadata,
    get_azure_metadata,
    get_cloud_provider,
    get_gcp_metadata,
)


class _Response:
    def __init__(self, status, body):
        self.status = status
        self._body = body

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def read(self):
        return self._body


def _write(path, text):
    path.write_text(text)
    return str(path)


def test_provider_from_hypervisor_uuid(tmp_path):
    uuid = _write(tmp_path / "uuid", "EC2-placeholder\n")
    assert get_cloud_provider(uuid, str(tmp_path / "missing")) is CloudProvider.AWS


@pytest.mark.parametrize(
    "vendor, expected",
    [
        ("Amazon EC2\n", CloudProvider.AWS),
        ("Google\n", CloudProvider.GCP),
        ("Microsoft Corporation\n", CloudProvider.AZURE),
        ("Some Vendor\n", CloudProvider.UNKNOWN),
    ],
)
def test_provider_from_board_vendor(tmp_path, vendor, expected):
    uuid = _write(tmp_path / "uuid", "not-a-cloud\n")
    board = _write(tmp_path / "vendor", vendor)
    assert get_cloud_provider(uuid, board) is expected


def test_provider_unknown_without_files(tmp_path):
    result = get_cloud_provider(str(tmp_path / "a"), str(tmp_path / "b"))
    assert result is CloudProvider.UNKNOWN


AZURE_DOC = {
    "compute": {
        "location": "westeurope",
        "vmID": "vm-placeholder",
        "vmSize": "Standard_D2s_v3",
        "zone": "zone-a",
        "subscriptionId": "subscription-placeholder",
    },
    "network": {
        "interface": [
            {
                "ipv4": {
                    "ipAddress": [
                        {"privateIpAddress": "10.0.0.4", "publicIpAddress": "203.0.113.7"}
                    ]
                }
            }
        ]
    },
}


def test_azure_metadata_from_json():
    md = azure_metadata_from_json(json.dumps(AZURE_DOC))
    assert md == CloudMetadata(
        provider=CloudProvider.AZURE,
        account_id="subscription-placeholder",
        instance_id="vm-placeholder",
        instance_type="Standard_D2s_v3",
        region="westeurope",
        availability_zone="zone-a",
        local_ipv4="10.0.0.4",
        public_ipv4="203.0.113.7",
    )


def test_azure_metadata_without_interfaces():
    md = azure_metadata_from_json(json.dumps({"compute": {"location": "eastus"}}))
    assert md.region == "eastus"
    assert md.local_ipv4 == ""
    assert md.public_ipv4 == ""


def test_azure_field_names_are_case_insensitive():
    md = azure_metadata_from_json(json.dumps({"Compute": {"Location": "northeurope"}}))
    assert md.region == "northeurope"


@pytest.mark.parametrize("payload", ["not json", "[1, 2]", '{"compute": {"location": 5}}'])
def test_azure_metadata_invalid(payload):
    with pytest.raises(ValueError):
        azure_metadata_from_json(payload)


def test_get_azure_metadata_sends_headers():
    requests = []

    def fake_urlopen(request, timeout=None):
        requests.append(request)
        return _Response(200, json.dumps(AZURE_DOC).encode())

    with mock.patch("urllib.request.urlopen", fake_urlopen):
        md = get_azure_metadata()
    assert md.instance_id == "vm-placeholder"
    assert requests[0].get_header("Metadata") == "True"
    assert "format=json" in requests[0].full_url
    assert "api-version=2021-05-01" in requests[0].full_url


def test_get_azure_metadata_bad_status():
    with mock.patch("urllib.request.urlopen", lambda request, timeout=None: _Response(500, b"")):
        assert get_azure_metadata() is None


def test_get_azure_metadata_unreachable():
    def fake_urlopen(request, timeout=None):
        raise urllib.error.URLError("unreachable")

    with mock.patch("urllib.request.urlopen", fake_urlopen):
        assert get_azure_metadata() is None


GCP_VALUES = {
    "project/project-id": "project-placeholder",
    "instance/id": "instance-placeholder",
    "instance/network-interfaces/0/ip": "10.128.0.2",
    "instance/network-interfaces/0/access-configs/0/external-ip": "198.51.100.3",
    "instance/scheduling/preemptible": "TRUE",
    "instance/machine-type": "projects/42/machineTypes/e2-medium",
    "instance/zone": "projects/42/zones/europe-west1-b",
}


def test_gcp_metadata_from_values():
    md = gcp_metadata_from_values(GCP_VALUES)
    assert md.provider is CloudProvider.GCP
    assert md.account_id == "project-placeholder"
    assert md.instance_id == "instance-placeholder"
    assert md.local_ipv4 == "10.128.0.2"
    assert md.public_ipv4 == "198.51.100.3"
    assert md.life_cycle == "preemptible"
    assert md.instance_type == "e2-medium"
    assert md.availability_zone == "europe-west1-b"
    assert md.region == "europe-west1"


def test_gcp_metadata_on_demand_and_malformed_paths():
    md = gcp_metadata_from_values(
        {
            "instance/scheduling/preemptible": "false",
            "instance/machine-type": "e2-medium",
            "instance/zone": "projects/42/zones/nozone",
        }
    )
    assert md.life_cycle == "on-demand"
    assert md.instance_type == ""
    assert md.availability_zone == "nozone"
    assert md.region == ""


def test_get_gcp_metadata_queries_server():
    requests = []

    def fake_urlopen(request, timeout=None):
        requests.append(request)
        for path, value in GCP_VALUES.items():
            if request.full_url.endswith("/computeMetadata/v1/" + path):
                return _Response(200, value.encode())
        return _Response(404, b"")

    with mock.patch("urllib.request.urlopen", fake_urlopen):
        md = get_gcp_metadata()
    assert md == gcp_metadata_from_values(GCP_VALUES)
    assert all(r.get_header("Metadata-flavor") == "Google" for r in requests)


AWS_VALUES = {
    "instance-id": "i-placeholder",
    "instance-life-cycle": "spot",
    "instance-type": "m5.large",
    "placement/region": "eu-west-1",
    "placement/availability-zone": "eu-west-1a",
    "placement/availability-zone-id": "euw1-az1",
    "local-ipv4": "172.31.0.10",
    "public-ipv4": "192.0.2.10",
    "identity-credentials/ec2/info": json.dumps({"Code": "Success", "AccountId": "account-placeholder"}),
}


def _aws_service(token_available):
    def fake_urlopen(request, timeout=None):
        if request.full_url.endswith("/latest/api/token"):
            if not token_available:
                raise urllib.error.URLError("no token")
            assert request.get_method() == "PUT"
            return _Response(200, b"token")
        if token_available and request.get_header("X-aws-ec2-metadata-token") != "token":
            return _Response(401, b"")
        for path, value in AWS_VALUES.items():
            if request.full_url.endswith("/latest/meta-data/" + path):
                return _Response(200, value.encode())
        raise urllib.error.URLError("not found")

    return fake_urlopen


@pytest.mark.parametrize("token_available", [True, False])
def test_get_aws_metadata(token_available):
    with mock.patch("urllib.request.urlopen", _aws_service(token_available)):
        md = get_aws_metadata()
    assert md == CloudMetadata(
        provider=CloudProvider.AWS,
        account_id="account-placeholder",
        instance_id="i-placeholder",
        instance_type="m5.large",
        life_cycle="spot",
        region="eu-west-1",
        availability_zone="eu-west-1a",
        availability_zone_id="euw1-az1",
        local_ipv4="172.31.0.10",
        public_ipv4="192.0.2.10",
    )


def test_get_aws_metadata_unreachable_values_are_empty():
    def fake_urlopen(request, timeout=None):
        raise urllib.error.URLError("unreachable")

    with mock.patch("urllib.request.urlopen", fake_urlopen):
        md = get_aws_metadata()
    assert md == CloudMetadata(provider=CloudProvider.AWS)