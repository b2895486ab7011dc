from dataclasses import dataclass, field
from io import StringIO
import logging
from pyinfra import host
from pyinfra.api import FactBase, StringCommand, operation
from pyinfra.facts.server import Arch
from pyinfra.operations import apt, files, server, systemd

from pghaops.topology import CLIENT_PORT, PEER_PORT, ClusterTopology, CurrentNode, cluster_string, etcd_arch


logger = logging.getLogger(__name__)

ETCD_USER = 'etcd'
DATA_DIR = '/var/lib/etcd'
CONFIG_DIR = '/etc/etcd'
LOG_DIR = '/var/log/etcd'
BIN_DIR = '/usr/local/bin'
CONFIG_PATH = f'{CONFIG_DIR}/etcd.conf'
UNIT_PATH = '/etc/systemd/system/etcd.service'

INITIAL_STATES = ('new', 'existing')


@dataclass
class ClusterConfig:
    """
    etcd cluster configuration.

    Arguments:
        topology: The three members of the cluster. Every node must be
            provisioned with the same topology, otherwise etcd will fail to
            form a cluster (or worse).
        token: Initial cluster token. Keeps members of different clusters
            from joining each other by accident.
        version: etcd release to install from GitHub.
    """

    topology: ClusterTopology = field(default_factory=ClusterTopology)
    token: str = field(default='pgha-etcd-cluster')
    version: str = field(default='3.6.5')

    def download_url(self, arch: str) -> str:
        return f'https://github.com/etcd-io/etcd/releases/download/v{self.version}/{self.release_name(arch)}.tar.gz'

    def release_name(self, arch: str) -> str:
        return f'etcd-v{self.version}-linux-{arch}'


class EtcdVersion(FactBase):
    """
    Returns the version of the installed etcd binary, or None if it is not
    installed.
    """

    def command(self, path: str = f'{BIN_DIR}/etcd'):
        return f'test -x {path} && {path} --version || true'

    def process(self, output):
        # First line looks like "etcd Version: 3.6.5"
        for line in output:
            if line.startswith('etcd Version:'):
                return line.split(':', 1)[1].strip()
        return None


@operation()
def node(cluster: ClusterConfig, current: CurrentNode, arch: str = None,
         initial_state: str = 'new'):
    """
    Installs and configures an etcd member on the current host, natively
    under systemd. The service is enabled but NOT started: members must
    be started and added one by one, starting from the first node.

    Arguments:
        cluster: Cluster configuration. Must be same for all nodes.
        current: Identity of this host within the cluster topology.
        arch: etcd release architecture. Detected from the host if not given.
        initial_state: "new" when bootstrapping, "existing" when this member
            joins a cluster that is already running.
    """
    if initial_state not in INITIAL_STATES:
        raise ValueError(f'initial_state must be one of {INITIAL_STATES}, got {initial_state}')
    if arch is None:
        arch = etcd_arch(host.get_fact(Arch))

    yield from apt.packages._inner(packages=['wget', 'curl', 'tar'], update=True)
    yield from server.user._inner(user=ETCD_USER, system=True, home=DATA_DIR, shell='/bin/false')
    yield from files.directory._inner(path=DATA_DIR, user=ETCD_USER, group=ETCD_USER)
    yield from files.directory._inner(path=CONFIG_DIR)
    yield from files.directory._inner(path=LOG_DIR, user=ETCD_USER, group=ETCD_USER)

    yield from install_binaries._inner(cluster=cluster, arch=arch)

    # Never touch a running member's config under its feet
    yield from systemd.service._inner(service='etcd.service', running=False)

    env = _etcd_env(cluster, current, initial_state)
    yield from files.put._inner(src=StringIO(env), dest=CONFIG_PATH, user=ETCD_USER, group=ETCD_USER, mode='644')
    yield from files.put._inner(src=StringIO(_etcd_unit()), dest=UNIT_PATH, mode='644')
    yield from systemd.service._inner(service='etcd.service', running=False, enabled=True, daemon_reload=True)


@operation()
def install_binaries(cluster: ClusterConfig, arch: str):
    """
    Installs etcd, etcdctl and etcdutl to /usr/local/bin, unless the
    requested version is already there.
    """
    installed = host.get_fact(EtcdVersion, path=f'{BIN_DIR}/etcd')
    if installed == cluster.version:
        logger.warning('etcd %s already installed', cluster.version)
        return
    if installed:
        logger.info('Updating etcd from %s to %s', installed, cluster.version)

    release = cluster.release_name(arch)
    tarball = f'/tmp/{release}.tar.gz'
    yield from files.download._inner(src=cluster.download_url(arch), dest=tarball, force=True)
    yield StringCommand(f'tar -xzf {tarball} -C /tmp')
    yield StringCommand(' '.join([
        'install -m 755',
        *[f'/tmp/{release}/{binary}' for binary in ('etcd', 'etcdctl', 'etcdutl')],
        BIN_DIR,
    ]))
    yield StringCommand(f'rm -rf /tmp/{release} {tarball}')


def _etcd_env(cluster: ClusterConfig, current: CurrentNode, initial_state: str = 'new') -> str:
    values = {
        'ETCD_NAME': current.name,
        'ETCD_DATA_DIR': DATA_DIR,
        'ETCD_INITIAL_CLUSTER': cluster_string(cluster.topology, current),
        'ETCD_INITIAL_CLUSTER_STATE': initial_state,
        'ETCD_INITIAL_CLUSTER_TOKEN': cluster.token,
        'ETCD_LISTEN_PEER_URLS': f'http://{current.ip}:{PEER_PORT}',
        'ETCD_INITIAL_ADVERTISE_PEER_URLS': f'http://{current.ip}:{PEER_PORT}',
        'ETCD_LISTEN_CLIENT_URLS': f'http://{current.ip}:{CLIENT_PORT},http://127.0.0.1:{CLIENT_PORT}',
        'ETCD_ADVERTISE_CLIENT_URLS': f'http://{current.ip}:{CLIENT_PORT}',
        'ETCD_ELECTION_TIMEOUT': '5000',
        'ETCD_HEARTBEAT_INTERVAL': '1000',
        'ETCD_INITIAL_ELECTION_TICK_ADVANCE': 'false',
        'ETCD_AUTO_COMPACTION_RETENTION': '1',
        'ETCD_QUOTA_BACKEND_BYTES': '6442450944',
        'ETCD_LOG_LEVEL': 'info',
        'ETCD_LOG_OUTPUTS': f'{LOG_DIR}/etcd.log',
    }
    lines = [f'# Managed by pghaops - etcd member {current.name}']
    lines += [f'{key}="{value}"' for key, value in values.items()]
    return '\n'.join(lines) + '\n'


def _etcd_unit() -> str:
    return f"""[Unit]
Description=etcd server - coordination store for Patroni
After=network-online.target
Wants=network-online.target

[Service]
Type=notify
WorkingDirectory={DATA_DIR}
EnvironmentFile={CONFIG_PATH}
User={ETCD_USER}
ExecStart=/bin/bash -c "GOMAXPROCS=$(nproc) {BIN_DIR}/etcd"
Restart=on-failure

# Resource limits
LimitNOFILE=65536
LimitNPROC=8192
IOSchedulingClass=realtime
IOSchedulingPriority=0
Nice=-20

[Install]
WantedBy=multi-user.target
"""
