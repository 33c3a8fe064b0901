"""Cluster addons: Cilium networking, the default Gateway and MetalLB."""

import yaml

from cluster_deployer import packages as pkg
from cluster_deployer.channel import CommandChannel
from cluster_deployer.context import CommandContext
from cluster_deployer.exceptions import AddonError, ClusterDeployerError, PollTimeoutError, RemoteCommandError
from cluster_deployer.kubectl import apply_manifests, jsonpath, poll_until
from cluster_deployer.logging_config import get_logger
from cluster_deployer.models import API_SERVER_PORT, ClusterConfig
from cluster_deployer.node_setup import PUBLIC_REGISTRIES, registry_host, registry_path
from cluster_deployer.packages import PackageManager

logger = get_logger(__name__)

HELM_PATH = "/usr/local/bin/helm"
CILIUM_CHART_PATH = "/tmp/cilium.tgz"
CILIUM_VALUES_PATH = "/tmp/cilium-values.yaml"
METALLB_CHART_PATH = "/tmp/metallb.tgz"
METALLB_NAMESPACE = "metallb-system"
CILIUM_LB_MODES = {"dsr", "snat", "hybrid"}
HUBBLE_METRICS = ["dns", "drop", "tcp", "flow", "port-distribution", "icmp", "httpV2"]

GATEWAY_NAME = "default-gateway"


def _private_registry(config: ClusterConfig) -> str | None:
    """Image registry prefix when images come from a private mirror."""
    if registry_host(config.spec.image_repository) in PUBLIC_REGISTRIES:
        return None
    return registry_path(config.spec.image_repository)


def cilium_values(config: ClusterConfig, api_host: str) -> dict:
    """Helm values for Cilium running as the kube-proxy replacement."""
    spec = config.spec
    lb_mode = spec.load_balancer.mode if spec.load_balancer.mode in CILIUM_LB_MODES else "dsr"

    hubble = {
        "enabled": spec.hubble.enabled,
        "relay": {"enabled": spec.hubble.enabled},
        "ui": {"enabled": spec.hubble.enabled and spec.hubble.ui.enabled},
    }
    if spec.hubble.enabled and spec.hubble.metrics.enabled:
        hubble["metrics"] = {"enabled": HUBBLE_METRICS}
    if hubble["ui"]["enabled"] and spec.hubble.ui.node_port:
        hubble["ui"]["service"] = {"type": "NodePort", "nodePort": spec.hubble.ui.node_port}

    values = {
        "kubeProxyReplacement": True,
        "k8sServiceHost": api_host,
        "k8sServicePort": str(API_SERVER_PORT),
        "ipam": {
            "mode": "cluster-pool",
            "operator": {"clusterPoolIPv4PodCIDRList": [spec.networking.pod_subnet]},
        },
        "routingMode": "tunnel",
        "tunnelProtocol": "vxlan",
        "loadBalancer": {"mode": lb_mode},
        "bgpControlPlane": {"enabled": spec.bgp.enabled},
        "gatewayAPI": {"enabled": spec.gateway_api.enabled},
        "envoy": {"enabled": spec.envoy.enabled or spec.gateway_api.enabled},
        "hubble": hubble,
        "operator": {"replicas": 1 if len(config.masters()) == 1 else 2},
    }

    registry = _private_registry(config)
    if registry:
        values["image"] = {"repository": f"{registry}/cilium/cilium", "useDigest": False}
        values["operator"]["image"] = {
            "repository": f"{registry}/cilium/operator",
            "useDigest": False,
        }
        values["envoy"]["image"] = {
            "repository": f"{registry}/cilium/cilium-envoy",
            "useDigest": False,
        }
        hubble["relay"]["image"] = {"repository": f"{registry}/cilium/hubble-relay", "useDigest": False}
        hubble["ui"]["frontend"] = {"image": {"repository": f"{registry}/cilium/hubble-ui"}}
        hubble["ui"]["backend"] = {"image": {"repository": f"{registry}/cilium/hubble-ui-backend"}}
    return values


def install_helm(channel: CommandChannel, packages: PackageManager) -> None:
    channel.upload(packages.read(pkg.HELM), HELM_PATH, 0o755)


def cilium_ready(channel: CommandChannel) -> bool:
    """True once every scheduled cilium agent pod is ready."""
    status = jsonpath(
        channel,
        "ds cilium -n kube-system",
        "{.status.numberReady}/{.status.desiredNumberScheduled}",
    )
    ready, _, desired = status.partition("/")
    if not ready.isdigit() or not desired.isdigit():
        return False
    return int(desired) > 0 and int(ready) == int(desired)


def kube_proxy_absent(channel: CommandChannel) -> bool:
    try:
        channel.execute("kubectl get ds kube-proxy -n kube-system")
    except RemoteCommandError:
        return True
    return False


def install_cilium(
    ctx: CommandContext, channel: CommandChannel, config: ClusterConfig, api_host: str
) -> None:
    """Install Cilium and wait until it fully replaces kube-proxy.

    Raises:
        AddonError: If the install fails or the agents never become ready
    """
    packages = ctx.packages(config)
    settings = ctx.settings
    try:
        install_helm(channel, packages)
        channel.upload(packages.read(pkg.CILIUM_CHART), CILIUM_CHART_PATH)
        values = cilium_values(config, api_host)
        channel.upload(yaml.safe_dump(values, sort_keys=False).encode(), CILIUM_VALUES_PATH, 0o600)
        ctx.echo("Installing Cilium")
        channel.execute(
            f"helm upgrade --install cilium {CILIUM_CHART_PATH} "
            f"--namespace kube-system --values {CILIUM_VALUES_PATH}"
        )
        channel.execute(f"rm -f {CILIUM_CHART_PATH} {CILIUM_VALUES_PATH}")

        agents = {"ready": False}

        def replaced_kube_proxy() -> bool:
            agents["ready"] = cilium_ready(channel)
            return agents["ready"] and kube_proxy_absent(channel)

        try:
            poll_until(
                replaced_kube_proxy,
                settings.cilium_ready_attempts,
                settings.poll_interval,
                ctx.sleep,
                "Cilium agents to become ready without kube-proxy",
            )
        except PollTimeoutError as e:
            # agents came up but kube-proxy never went away
            if agents["ready"]:
                raise AddonError(
                    "kube-proxy is still running alongside Cilium",
                    "Delete the kube-proxy DaemonSet: kubectl -n kube-system delete ds kube-proxy",
                ) from e
            raise
        logger.debug(channel.execute("kubectl get pods -n kube-system -l k8s-app=cilium"))
    except AddonError:
        raise
    except ClusterDeployerError as e:
        raise AddonError(f"Cilium installation failed: {e.message}", e.details) from e

    ctx.echo("Cilium is ready")
    if config.spec.gateway_api.enabled:
        try:
            address = deploy_default_gateway(ctx, channel)
            ctx.echo(f"Default gateway address: {address}")
        except ClusterDeployerError as e:
            logger.warning(f"Default gateway not ready: {e.message}")
            ctx.echo(f"Warning: default gateway not ready ({e.message}); the cluster is usable")


def gateway_manifest() -> dict:
    return {
        "apiVersion": "gateway.networking.k8s.io/v1",
        "kind": "Gateway",
        "metadata": {"name": GATEWAY_NAME, "namespace": "default"},
        "spec": {
            "gatewayClassName": "cilium",
            "listeners": [
                {
                    "name": "http",
                    "protocol": "HTTP",
                    "port": 80,
                    "allowedRoutes": {"namespaces": {"from": "All"}},
                }
            ],
        },
    }


def deploy_default_gateway(ctx: CommandContext, channel: CommandChannel) -> str:
    """Wait for the cilium GatewayClass, create the default Gateway and return its address.

    Raises:
        PollTimeoutError: If the class is never accepted or no address is assigned
    """
    settings = ctx.settings
    poll_until(
        lambda: jsonpath(
            channel,
            "gatewayclass cilium",
            '{.status.conditions[?(@.type=="Accepted")].status}',
        )
        == "True",
        settings.gateway_attempts,
        settings.poll_interval,
        ctx.sleep,
        "GatewayClass cilium to be accepted",
    )
    apply_manifests(channel, [gateway_manifest()], GATEWAY_NAME)

    address = {}

    def has_address() -> bool:
        address["value"] = jsonpath(
            channel, f"gateway {GATEWAY_NAME} -n default", "{.status.addresses[0].value}"
        )
        return bool(address["value"])

    poll_until(
        has_address,
        settings.gateway_attempts,
        settings.poll_interval,
        ctx.sleep,
        "default gateway to get an address",
    )
    return address["value"]


def load_balancer_required(config: ClusterConfig) -> bool:
    """MetalLB is installed for BGP or when L2 announcement is requested."""
    return config.uses_metallb()


def ip_pool_name(config: ClusterConfig) -> str:
    return f"{config.name}-ip-pool"


def metallb_manifests(config: ClusterConfig) -> list[dict]:
    """MetalLB resources for the cluster, address pool first.

    Raises:
        AddonError: If no load-balancer addresses are configured
    """
    bgp = config.spec.bgp
    if not bgp.load_balancer_ips:
        raise AddonError(
            "No load-balancer IPs configured",
            "Set spec.bgp.loadBalancerIPs to the addresses MetalLB may hand out",
        )

    name = config.name
    pool = ip_pool_name(config)
    manifests = [
        {
            "apiVersion": "metallb.io/v1beta1",
            "kind": "IPAddressPool",
            "metadata": {"name": pool, "namespace": METALLB_NAMESPACE},
            "spec": {"addresses": list(bgp.load_balancer_ips)},
        }
    ]
    if bgp.enabled:
        for i, peer in enumerate(bgp.peers):
            manifests.append(
                {
                    "apiVersion": "metallb.io/v1beta2",
                    "kind": "BGPPeer",
                    "metadata": {"name": f"{name}-peer-{i}", "namespace": METALLB_NAMESPACE},
                    "spec": {
                        "myASN": bgp.local_asn,
                        "peerASN": peer.peer_asn,
                        "peerAddress": peer.peer_address,
                    },
                }
            )
        manifests.append(
            {
                "apiVersion": "metallb.io/v1beta1",
                "kind": "BGPAdvertisement",
                "metadata": {"name": f"{name}-bgp-adv", "namespace": METALLB_NAMESPACE},
                "spec": {"ipAddressPools": [pool]},
            }
        )
    else:
        manifests.append(
            {
                "apiVersion": "metallb.io/v1beta1",
                "kind": "L2Advertisement",
                "metadata": {"name": f"{name}-l2-adv", "namespace": METALLB_NAMESPACE},
                "spec": {"ipAddressPools": [pool]},
            }
        )
    return manifests


def _existing_names(channel: CommandChannel, kind: str) -> list[str]:
    try:
        output = jsonpath(channel, f"{kind} -n {METALLB_NAMESPACE}", "{.items[*].metadata.name}")
    except RemoteCommandError:
        return []
    return output.split()


def prune_metallb_resources(channel: CommandChannel, config: ClusterConfig, manifests: list[dict]) -> None:
    """Delete this cluster's peers and advertisements that are no longer desired."""
    desired = {(m["kind"].lower(), m["metadata"]["name"]) for m in manifests}
    prefix = f"{config.name}-"
    for kind in ("bgppeer", "bgpadvertisement", "l2advertisement"):
        for name in _existing_names(channel, kind):
            if name.startswith(prefix) and (kind, name) not in desired:
                logger.info(f"Removing stale {kind} {name}")
                channel.execute(f"kubectl delete {kind} {name} -n {METALLB_NAMESPACE}")


def install_metallb(ctx: CommandContext, channel: CommandChannel, config: ClusterConfig) -> None:
    """Install or update MetalLB and its address pool, peers and advertisements.

    Raises:
        AddonError: On any failure
    """
    manifests = metallb_manifests(config)
    packages = ctx.packages(config)
    timeout = ctx.settings.rollout_timeout
    try:
        if not channel.path_exists(HELM_PATH):
            install_helm(channel, packages)
        channel.upload(packages.read(pkg.METALLB_CHART), METALLB_CHART_PATH)

        command = (
            f"helm upgrade --install metallb {METALLB_CHART_PATH} "
            f"--namespace {METALLB_NAMESPACE} --create-namespace"
        )
        registry = _private_registry(config)
        if registry:
            command += (
                f" --set controller.image.repository={registry}/metallb/controller"
                f" --set speaker.image.repository={registry}/metallb/speaker"
            )
        ctx.echo("Installing MetalLB")
        channel.execute(f"{command} --wait")
        channel.execute(f"rm -f {METALLB_CHART_PATH}")

        channel.execute(
            f"kubectl rollout status deployment/metallb-controller -n {METALLB_NAMESPACE} --timeout={timeout}"
        )
        channel.execute(
            f"kubectl rollout status daemonset/metallb-speaker -n {METALLB_NAMESPACE} --timeout={timeout}"
        )
        # webhook endpoints lag behind the rollout
        ctx.sleep(ctx.settings.poll_interval)

        apply_manifests(channel, manifests, "metallb-config")
        prune_metallb_resources(channel, config, manifests)

        channel.execute(f"kubectl get ipaddresspool -n {METALLB_NAMESPACE}")
        if config.spec.bgp.enabled:
            channel.execute(f"kubectl get bgppeer -n {METALLB_NAMESPACE}")
            channel.execute(f"kubectl get bgpadvertisement -n {METALLB_NAMESPACE}")
        else:
            channel.execute(f"kubectl get l2advertisement -n {METALLB_NAMESPACE}")
    except ClusterDeployerError as e:
        raise AddonError(f"MetalLB installation failed: {e.message}", e.details) from e
    ctx.echo("MetalLB configured")


def label_gpu_node(channel: CommandChannel, hostname: str) -> None:
    channel.execute(f"kubectl label node {hostname} gpu=on --overwrite")
