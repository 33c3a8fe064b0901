"""Tests for the cluster bootstrap sequence."""

import pytest
import yaml

from cluster_deployer.addons import CILIUM_VALUES_PATH
from cluster_deployer.exceptions import AggregateNodeError, NodeOperationError, UserCancelledError
from cluster_deployer.kubeadm import ADMIN_CONF, INIT_CONFIG_PATH, KUBELET_CONF, RESET_SCRIPT
from cluster_deployer.sequencer import BootstrapSequencer, BootstrapState, deployment_summary
from conftest import ADMIN_KUBECONFIG, BGP_SPEC, control_plane_responses, make_config


@pytest.fixture
def master(fleet):
    return fleet.channel("10.0.0.1", responses=control_plane_responses(), fail_on={"get ds kube-proxy"})


@pytest.fixture
def kubeconfig_path(tmp_path):
    return tmp_path / "kube" / "config"


def test_bootstrap_single_master_two_workers(ctx, fleet, master, kubeconfig_path):
    """Test the full happy path for one master and two workers."""
    config = make_config(masters=1, workers=2)

    result = BootstrapSequencer(ctx, config, kubeconfig_path=kubeconfig_path).run()

    assert result.history == list(BootstrapState)
    assert result.endpoint == "10.0.0.1:6443"
    assert result.persisted
    assert len(master.ran("kubeadm init --config")) == 1
    assert master.modes[INIT_CONFIG_PATH] == 0o600
    assert not master.ran("upload-certs")

    joins = [c for ip in ("10.0.1.1", "10.0.1.2") for c in fleet.channel(ip).ran("kubeadm join")]
    assert len(joins) == 2
    assert not any("--control-plane" in c for c in joins)

    assert len(master.ran("helm upgrade --install cilium")) == 1
    values = yaml.safe_load(master.uploads[CILIUM_VALUES_PATH])
    assert values["bgpControlPlane"]["enabled"] is False
    assert not master.ran("helm upgrade --install metallb")

    assert kubeconfig_path.read_text() == ADMIN_KUBECONFIG
    assert master.ran("kubectl apply -f /tmp/cluster-deployer-config-")


def test_bootstrap_ha_joins_other_masters(ctx, fleet, master, kubeconfig_path):
    """Test that HA clusters configure the VIP and join masters with the cert key."""
    config = make_config(masters=3, workers=1, ha=True, bgp=BGP_SPEC)

    result = BootstrapSequencer(ctx, config, kubeconfig_path=kubeconfig_path).run()

    assert result.endpoint == "10.0.0.100:6443"
    assert master.ran("upload-certs")
    for ip in ("10.0.0.2", "10.0.0.3"):
        channel = fleet.channel(ip)
        (join,) = channel.ran("kubeadm join")
        assert "--control-plane --certificate-key" in join
        assert f"--apiserver-advertise-address {ip}" in join
        assert channel.ran("haproxy -c -f")
    assert master.ran("helm upgrade --install metallb")
    values = yaml.safe_load(master.uploads[CILIUM_VALUES_PATH])
    assert values["k8sServiceHost"] == "10.0.0.100"


def test_declined_deployment_touches_nothing(ctx, fleet):
    """Test that declining the summary prompt opens no channels."""
    ctx.auto_confirm = False
    ctx.confirm = lambda prompt: False

    with pytest.raises(UserCancelledError):
        BootstrapSequencer(ctx, make_config()).run()

    assert fleet.opened == []


def test_existing_control_plane_kept_when_reset_declined(ctx, fleet, kubeconfig_path):
    """Test that declining the reset leaves the old control plane alone."""
    master = fleet.channel(
        "10.0.0.1", responses=control_plane_responses(), existing_paths={ADMIN_CONF}
    )
    ctx.confirm_dangerous = lambda prompt: False
    sequencer = BootstrapSequencer(ctx, make_config(), kubeconfig_path=kubeconfig_path)

    with pytest.raises(UserCancelledError):
        sequencer.run()

    assert RESET_SCRIPT not in master.commands
    assert not master.ran("kubeadm init")
    assert sequencer.state is BootstrapState.FIRST_MASTER_INITIALIZING


def test_existing_control_plane_reset_when_confirmed(ctx, fleet, kubeconfig_path):
    """Test that a confirmed reset runs before init."""
    master = fleet.channel(
        "10.0.0.1",
        responses=control_plane_responses(),
        fail_on={"get ds kube-proxy"},
        existing_paths={ADMIN_CONF},
    )
    prompts = []
    ctx.confirm_dangerous = lambda prompt: prompts.append(prompt) or True

    BootstrapSequencer(ctx, make_config(workers=0), kubeconfig_path=kubeconfig_path).run()

    assert len(prompts) == 1
    reset_at = master.commands.index(RESET_SCRIPT)
    init_at = master.commands.index(master.ran("kubeadm init")[0])
    assert reset_at < init_at


def test_worker_with_stale_membership_is_reset(ctx, fleet, master, kubeconfig_path):
    """Test that a worker still holding a kubelet.conf is reset before joining."""
    worker = fleet.channel("10.0.1.1", existing_paths={KUBELET_CONF})

    BootstrapSequencer(ctx, make_config(workers=1), kubeconfig_path=kubeconfig_path).run()

    assert worker.ran("kubeadm reset -f")
    assert worker.ran("kubeadm join")


def test_worker_join_failures_are_aggregated(ctx, fleet, master, kubeconfig_path):
    """Test that every failed worker is named and the run stops before GPU tagging."""
    fleet.channel("10.0.1.1", fail_on={"kubeadm join"})
    fleet.channel("10.0.1.2", fail_on={"kubeadm join"})
    sequencer = BootstrapSequencer(ctx, make_config(workers=3), kubeconfig_path=kubeconfig_path)

    with pytest.raises(AggregateNodeError) as exc_info:
        sequencer.run()

    assert exc_info.value.failed_nodes == ["test-node-01", "test-node-02"]
    assert fleet.channel("10.0.1.3").ran("kubeadm join")
    assert sequencer.state is BootstrapState.WORKERS_JOINING


def test_init_failure_names_first_master(ctx, fleet, kubeconfig_path):
    """Test that a failed kubeadm init is reported against the first master."""
    fleet.channel("10.0.0.1", fail_on={"kubeadm init"})

    with pytest.raises(NodeOperationError) as exc_info:
        BootstrapSequencer(ctx, make_config(), kubeconfig_path=kubeconfig_path).run()

    assert exc_info.value.node == "test-master-01"
    assert exc_info.value.phase == "control-plane init"


def test_gpu_nodes_are_labelled(ctx, master, kubeconfig_path):
    """Test that GPU workers receive the gpu=on label."""
    BootstrapSequencer(ctx, make_config(workers=0, gpu_workers=1), kubeconfig_path=kubeconfig_path).run()

    assert master.ran("kubectl label node test-gpu-node-01 gpu=on --overwrite")


def test_persist_failure_only_warns(ctx, fleet, echoed, kubeconfig_path):
    """Test that the cluster is still DONE when the state cannot be saved."""
    fleet.channel(
        "10.0.0.1",
        responses=control_plane_responses(),
        fail_on={"get ds kube-proxy", "kubectl apply"},
    )

    result = BootstrapSequencer(ctx, make_config(), kubeconfig_path=kubeconfig_path).run()

    assert not result.persisted
    assert result.history[-1] is BootstrapState.DONE
    assert any("cluster configuration not saved" in message for message in echoed)


def test_deployment_summary():
    """Test the confirmation summary text."""
    summary = deployment_summary(make_config(masters=3, ha=True, bgp=BGP_SPEC))

    assert "Endpoint:  10.0.0.100:6443" in summary
    assert "HA:        enabled, VIP 10.0.0.100" in summary
    assert "BGP:       enabled, AS 64512" in summary


def test_bootstrap_skips_metallb_without_bgp_or_l2(ctx, fleet, master, kubeconfig_path):
    """Test that a metallb provider in a non-l2 mode installs no MetalLB."""
    config = make_config(masters=1, workers=0, loadBalancer={"provider": "metallb", "mode": "dsr"})

    result = BootstrapSequencer(ctx, config, kubeconfig_path=kubeconfig_path).run()

    assert result.history[-1] == BootstrapState.DONE
    assert not master.ran("helm upgrade --install metallb")
