"""Shared fixtures for the endpoint list tests."""

import pytest

from generate_ms365_lists import EndpointListGenerator, EndpointRecord


SAMPLE_FEED = [
    {
        "id": 1,
        "serviceArea": "Exchange",
        "serviceAreaDisplayName": "Exchange Online",
        "urls": ["outlook.office.com", "outlook.office365.com"],
        "ips": ["13.107.6.152/31", "2603:1006::/40", "13.107.18.10/31"],
        "tcpPorts": "80,443",
        "expressRoute": True,
        "category": "Optimize",
        "required": True,
    },
    {
        "id": 2,
        "serviceArea": "Exchange",
        "urls": ["outlook.office.com", "*.outlook.com"],
        "tcpPorts": "443",
        "category": "Allow",
        "required": True,
    },
    {
        "id": 3,
        "serviceArea": "SharePoint",
        "urls": ["*.sharepoint.com"],
        "ips": ["13.107.136.0/22", "2620:1ec:8f8::/46"],
        "tcpPorts": "80, 443",
        "category": "Optimize",
        "required": True,
    },
    {
        "id": 4,
        "serviceArea": "Skype",
        "ips": ["52.112.0.0/14"],
        "udpPorts": "3478,3479,3480,3481",
        "category": "Optimize",
        "required": True,
    },
    {
        "id": 5,
        "urls": ["*.office.com", "  ", ""],
        "tcpPorts": "443",
        "category": "Default",
        "required": False,
    },
]


@pytest.fixture
def sample_feed():
    return [dict(item) for item in SAMPLE_FEED]


@pytest.fixture
def sample_records(sample_feed):
    return [EndpointRecord.from_dict(item) for item in sample_feed]


@pytest.fixture
def output_dir(tmp_path):
    return tmp_path / "lists"


@pytest.fixture
def make_generator(output_dir, tmp_path):
    generators = []

    def _make(**kwargs):
        kwargs.setdefault("output_dir", str(output_dir))
        kwargs.setdefault("client_request_id", "b10c5ed1-bad1-445f-b386-b919946339a7")
        kwargs.setdefault("log_file", str(tmp_path / "ms365_lists.log"))
        generator = EndpointListGenerator(**kwargs)
        generators.append(generator)
        return generator

    yield _make

    for generator in generators:
        generator.session.close()
