"""Property-based tests for HA sizing and load-balancer address validation."""

import ipaddress

import pytest
from hypothesis import given
from hypothesis import strategies as st

from cluster_deployer.exceptions import ValidationError
from cluster_deployer.models import ClusterConfig
from cluster_deployer.validation import MIN_HA_MASTERS, check_address_entry, validate_cluster_config

SSH = {"user": "root", "password": "secret"}
VIP = "10.0.0.100"


def ha_config(masters: int, workers: int, ha: bool) -> ClusterConfig:
    nodes = [{"role": "master", "ip": f"10.0.0.{i + 1}", "ssh": SSH} for i in range(masters)]
    nodes += [{"role": "worker", "ip": f"10.0.1.{i + 1}", "ssh": SSH} for i in range(workers)]
    spec = {"nodes": nodes}
    if ha:
        spec["ha"] = {"enabled": True, "vip": VIP}
    return ClusterConfig.model_validate({"metadata": {"name": "prop"}, "spec": spec})


@given(masters=st.integers(min_value=1, max_value=7), workers=st.integers(min_value=0, max_value=5))
def test_ha_endpoint_is_vip(masters, workers):
    """With HA enabled the endpoint is always the VIP, otherwise the first master."""
    assert ha_config(masters, workers, ha=True).control_plane_endpoint() == f"{VIP}:6443"
    assert ha_config(masters, workers, ha=False).control_plane_endpoint() == "10.0.0.1:6443"


@given(masters=st.integers(min_value=1, max_value=7), workers=st.integers(min_value=0, max_value=5))
def test_ha_requires_three_masters(masters, workers):
    """An HA description validates exactly when it has at least three masters."""
    config = ha_config(masters, workers, ha=True)

    if masters >= MIN_HA_MASTERS:
        validate_cluster_config(config)
    else:
        with pytest.raises(ValidationError) as exc_info:
            validate_cluster_config(config)
        assert f"found {masters}" in exc_info.value.details


ipv4 = st.integers(min_value=0, max_value=2**32 - 1).map(lambda n: str(ipaddress.IPv4Address(n)))


@given(a=ipv4, b=ipv4)
def test_range_order_decides_validity(a, b):
    """A range ``start-end`` is accepted exactly when start <= end."""
    problem = check_address_entry(f"{a}-{b}")

    if ipaddress.IPv4Address(a) <= ipaddress.IPv4Address(b):
        assert problem is None
    else:
        assert "must not be greater" in problem


@given(address=ipv4, prefix=st.integers(min_value=0, max_value=32))
def test_cidr_and_single_address_accepted(address, prefix):
    """Any IPv4 address, with or without a prefix length, is a valid pool entry."""
    assert check_address_entry(address) is None
    assert check_address_entry(f"{address}/{prefix}") is None


@given(prefix=st.integers(min_value=33, max_value=200))
def test_oversized_prefix_rejected(prefix):
    """Prefix lengths beyond 32 are rejected."""
    assert check_address_entry(f"10.0.0.0/{prefix}") is not None
