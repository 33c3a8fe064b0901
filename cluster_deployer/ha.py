"""Highly available control-plane endpoint with keepalived and haproxy.

keepalived floats the VIP between masters, tracking the local API server's
health; whichever master holds the VIP serves ``VIP:6443`` directly.
haproxy additionally spreads connections over every master on
``HAPROXY_PORT`` (it cannot share 6443 with the API server on the same host).
"""

from cluster_deployer.channel import CommandChannel
from cluster_deployer.context import CommandContext
from cluster_deployer.exceptions import NodeOperationError
from cluster_deployer.logging_config import get_logger
from cluster_deployer.models import API_SERVER_PORT, ClusterConfig, NodeDescriptor
from cluster_deployer.node_setup import write_if_changed

logger = get_logger(__name__)

HAPROXY_PORT = 8443
DEFAULT_ROUTER_ID = 51
HAPROXY_CONFIG_PATH = "/etc/haproxy/haproxy.cfg"
KEEPALIVED_CONFIG_PATH = "/etc/keepalived/keepalived.conf"
CHECK_SCRIPT_PATH = "/etc/keepalived/check_apiserver.sh"

CHECK_APISERVER_SCRIPT = f"""\
#!/bin/bash
errorExit() {{
    echo "*** $*" 1>&2
    exit 1
}}

curl --silent --max-time 2 --insecure https://localhost:{API_SERVER_PORT}/healthz -o /dev/null \\
    || errorExit "API server on localhost:{API_SERVER_PORT} is not responding"
"""


def router_id(vip: str) -> int:
    """VRRP router id derived from the VIP's last octet."""
    parts = vip.split(".")
    if len(parts) == 4 and parts[3].isdigit():
        value = int(parts[3])
        if 0 < value < 256:
            return value
    return DEFAULT_ROUTER_ID


def render_haproxy_config(config: ClusterConfig) -> str:
    servers = "\n".join(
        f"    server master-{i} {node.ip}:{API_SERVER_PORT} check inter 2000 rise 2 fall 3"
        for i, node in enumerate(config.masters(), start=1)
    )
    return f"""\
global
    log /dev/log local0
    chroot /var/lib/haproxy
    stats socket /run/haproxy/admin.sock mode 660 level admin
    stats timeout 30s
    user haproxy
    group haproxy
    daemon
    maxconn 4000

defaults
    log     global
    mode    tcp
    option  tcplog
    option  dontlognull
    timeout connect 5000
    timeout client  50000
    timeout server  50000
    retries 3

frontend k8s-api
    bind *:{HAPROXY_PORT}
    mode tcp
    option tcplog
    default_backend k8s-api-backend

backend k8s-api-backend
    mode tcp
    balance roundrobin
    option tcp-check
{servers}
"""


def render_keepalived_config(
    config: ClusterConfig, node: NodeDescriptor, interface: str, state: str, priority: int
) -> str:
    vip = config.spec.ha.vip
    return f"""\
global_defs {{
    router_id {node.hostname}
    enable_script_security
    script_user root
}}

vrrp_script check_apiserver {{
    script "{CHECK_SCRIPT_PATH}"
    interval 3
    weight -2
    fall 10
    rise 2
}}

vrrp_instance VI_1 {{
    state {state}
    interface {interface}
    virtual_router_id {router_id(vip)}
    priority {priority}
    advert_int 1

    authentication {{
        auth_type PASS
        auth_pass {config.name[:8]}
    }}

    virtual_ipaddress {{
        {vip}
    }}

    track_script {{
        check_apiserver
    }}
}}
"""


def default_interface(channel: CommandChannel) -> str:
    output = channel.execute("ip -o -4 route show to default | awk '{print $5}' | head -1")
    return output.strip() or "eth0"


def configure_node(
    channel: CommandChannel, config: ClusterConfig, node: NodeDescriptor, state: str, priority: int
) -> None:
    channel.execute(
        "command -v keepalived >/dev/null && command -v haproxy >/dev/null || "
        "(export DEBIAN_FRONTEND=noninteractive; apt-get update -qq && "
        "apt-get install -y keepalived haproxy)"
    )
    write_if_changed(channel, HAPROXY_CONFIG_PATH, render_haproxy_config(config))
    channel.execute(f"haproxy -c -f {HAPROXY_CONFIG_PATH}")

    interface = default_interface(channel)
    write_if_changed(
        channel,
        KEEPALIVED_CONFIG_PATH,
        render_keepalived_config(config, node, interface, state, priority),
    )
    write_if_changed(channel, CHECK_SCRIPT_PATH, CHECK_APISERVER_SCRIPT, 0o755)

    channel.execute(
        "systemctl enable haproxy keepalived && "
        "systemctl restart haproxy && systemctl restart keepalived && sleep 2 && "
        "systemctl is-active haproxy && systemctl is-active keepalived"
    )
    logger.info(f"[{node.name}] keepalived {state} priority {priority} on {interface}")


def setup_ha(ctx: CommandContext, config: ClusterConfig) -> None:
    """Configure keepalived and haproxy on every master, one at a time.

    Raises:
        NodeOperationError: If any master cannot be configured
    """
    ctx.echo(f"Configuring HA endpoint {config.spec.ha.vip}")
    for i, node in enumerate(config.masters()):
        state = "MASTER" if i == 0 else "BACKUP"
        priority = 100 - i * 10
        try:
            with ctx.open_channel(node) as channel:
                configure_node(channel, config, node, state, priority)
        except Exception as e:
            raise NodeOperationError(node.name, "HA setup", e) from e
    ctx.echo(f"VIP {config.spec.ha.vip} configured on {len(config.masters())} masters")
