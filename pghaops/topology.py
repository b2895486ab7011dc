from dataclasses import dataclass, field

from pghaops.errors import NodeNotFoundError, UnsupportedPlatformError


PEER_PORT = 2380
CLIENT_PORT = 2379

# uname -m -> etcd release architecture
ARCHITECTURES = {
    'x86_64': 'amd64',
    'amd64': 'amd64',
    'aarch64': 'arm64',
    'arm64': 'arm64',
    'armv7l': 'arm',
    'armhf': 'arm',
}


@dataclass(frozen=True)
class Node:
    name: str
    ip: str

    @property
    def peer_url(self) -> str:
        return f'http://{self.ip}:{PEER_PORT}'

    @property
    def client_url(self) -> str:
        return f'http://{self.ip}:{CLIENT_PORT}'


@dataclass
class ClusterTopology:
    """
    Static cluster topology.

    Arguments:
        nodes: Exactly three nodes, in bootstrap order. The first node
            bootstraps the cluster and the others are added to it.
    """

    nodes: list[Node] = field(default_factory=lambda: list(DEFAULT_NODES))

    def __post_init__(self):
        if len(self.nodes) != 3:
            raise ValueError('only 3-node clusters are currently supported')
        if len({node.ip for node in self.nodes}) != len(self.nodes):
            raise ValueError('node IP addresses must be unique')
        if len({node.name for node in self.nodes}) != len(self.nodes):
            raise ValueError('node names must be unique')

    @classmethod
    def parse(cls, members: list[str]) -> 'ClusterTopology':
        """
        Builds a topology from NAME=IP strings.
        """
        nodes = []
        for member in members:
            name, sep, ip = member.partition('=')
            if not sep or not name or not ip:
                raise ValueError(f'invalid node {member!r}, expected NAME=IP')
            nodes.append(Node(name=name.strip(), ip=ip.strip()))
        return cls(nodes=nodes)


DEFAULT_NODES = (
    Node('lx-pgnode-01', '10.0.0.4'),
    Node('lx-pgnode-02', '10.0.0.5'),
    Node('lx-pgnode-03', '10.0.0.6'),
)


@dataclass(frozen=True)
class CurrentNode:
    name: str
    ip: str
    ordinal: int

    @property
    def node(self) -> Node:
        return Node(self.name, self.ip)

    @property
    def is_bootstrap(self) -> bool:
        return self.ordinal == 1


def resolve_node(topology: ClusterTopology, local_ip: str) -> CurrentNode:
    matches = [CurrentNode(node.name, node.ip, ordinal)
               for ordinal, node in enumerate(topology.nodes, start=1) if node.ip == local_ip]
    if len(matches) != 1:
        raise NodeNotFoundError(
            f'current IP ({local_ip}) does not match any configured node',
            hint='Configure the correct node IPs with --node NAME=IP or the config file',
        )
    return matches[0]


def cluster_string(topology: ClusterTopology, current: CurrentNode) -> str:
    others = [node for node in topology.nodes if node.ip != current.ip]
    return initial_cluster([current.node, *others])


def initial_cluster(nodes: list[Node]) -> str:
    return ','.join([f'{node.name}={node.peer_url}' for node in nodes])


def etcd_arch(machine: str, supported: tuple[str, ...] = ('amd64', 'arm64', 'arm')) -> str:
    arch = ARCHITECTURES.get(machine.lower())
    if arch is None or arch not in supported:
        raise UnsupportedPlatformError(
            f'unsupported architecture: {machine}',
            hint=f'supported architectures: {", ".join(supported)}',
        )
    return arch
