import pytest

from pghaops.errors import NodeNotFoundError, UnsupportedPlatformError
from pghaops.topology import ClusterTopology, CurrentNode, Node, cluster_string, etcd_arch, resolve_node


def test_default_topology():
    topology = ClusterTopology()
    assert [node.name for node in topology.nodes] == ['lx-pgnode-01', 'lx-pgnode-02', 'lx-pgnode-03']
    assert topology.nodes[0].peer_url == 'http://10.0.0.4:2380'
    assert topology.nodes[0].client_url == 'http://10.0.0.4:2379'


def test_parse_members():
    topology = ClusterTopology.parse(['a=10.1.0.1', 'b=10.1.0.2', 'c = 10.1.0.3'])
    assert topology.nodes[2] == Node('c', '10.1.0.3')

    with pytest.raises(ValueError):
        ClusterTopology.parse(['a=10.1.0.1', 'b10.1.0.2', 'c=10.1.0.3'])


def test_three_unique_nodes_required():
    with pytest.raises(ValueError):
        ClusterTopology(nodes=[Node('a', '10.1.0.1'), Node('b', '10.1.0.2')])
    with pytest.raises(ValueError):
        ClusterTopology(nodes=[Node('a', '10.1.0.1'), Node('b', '10.1.0.1'), Node('c', '10.1.0.3')])
    with pytest.raises(ValueError):
        ClusterTopology(nodes=[Node('a', '10.1.0.1'), Node('a', '10.1.0.2'), Node('c', '10.1.0.3')])


def test_resolve_node():
    topology = ClusterTopology()
    current = resolve_node(topology, '10.0.0.5')
    assert current == CurrentNode('lx-pgnode-02', '10.0.0.5', 2)
    assert not current.is_bootstrap
    assert resolve_node(topology, '10.0.0.4').is_bootstrap


def test_resolve_unknown_node():
    with pytest.raises(NodeNotFoundError) as e:
        resolve_node(ClusterTopology(), '192.168.1.1')
    assert '192.168.1.1' in e.value.message
    assert e.value.hint


def test_cluster_string_starts_with_current_node():
    topology = ClusterTopology()
    current = resolve_node(topology, '10.0.0.6')
    assert cluster_string(topology, current) == (
        'lx-pgnode-03=http://10.0.0.6:2380,'
        'lx-pgnode-01=http://10.0.0.4:2380,'
        'lx-pgnode-02=http://10.0.0.5:2380'
    )

    first = resolve_node(topology, '10.0.0.4')
    assert cluster_string(topology, first).startswith('lx-pgnode-01=http://10.0.0.4:2380,lx-pgnode-02=')


def test_etcd_arch():
    assert etcd_arch('x86_64') == 'amd64'
    assert etcd_arch('aarch64') == 'arm64'
    assert etcd_arch('armv7l') == 'arm'
    with pytest.raises(UnsupportedPlatformError):
        etcd_arch('riscv64')
    with pytest.raises(UnsupportedPlatformError):
        etcd_arch('armv7l', supported=('amd64', 'arm64'))


def test_cluster_string_is_stable():
    topology = ClusterTopology.parse(['a=10.1.0.1', 'b=10.1.0.2', 'c=10.1.0.3'])
    current = resolve_node(topology, '10.1.0.2')
    first = cluster_string(topology, current)
    assert cluster_string(topology, current) == first
    assert cluster_string(ClusterTopology.parse(['a=10.1.0.1', 'b=10.1.0.2', 'c=10.1.0.3']), current) == first
    assert first == 'b=http://10.1.0.2:2380,a=http://10.1.0.1:2380,c=http://10.1.0.3:2380'
