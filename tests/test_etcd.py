from pghaops import etcd
from pghaops.topology import ClusterTopology, resolve_node


def parse_env(text):
    values = {}
    for line in text.splitlines():
        if line.startswith('#') or not line:
            continue
        key, value = line.split('=', 1)
        values[key] = value.strip('"')
    return values


def test_download_url():
    cluster = etcd.ClusterConfig(version='3.6.5')
    assert cluster.download_url('arm64') == \
        'https://github.com/etcd-io/etcd/releases/download/v3.6.5/etcd-v3.6.5-linux-arm64.tar.gz'


def test_env_for_second_node():
    cluster = etcd.ClusterConfig(topology=ClusterTopology(), token='tok')
    current = resolve_node(cluster.topology, '10.0.0.5')
    values = parse_env(etcd._etcd_env(cluster, current))

    assert values['ETCD_NAME'] == 'lx-pgnode-02'
    assert values['ETCD_DATA_DIR'] == '/var/lib/etcd'
    assert values['ETCD_INITIAL_CLUSTER'].startswith('lx-pgnode-02=http://10.0.0.5:2380,')
    assert values['ETCD_INITIAL_CLUSTER_STATE'] == 'new'
    assert values['ETCD_INITIAL_CLUSTER_TOKEN'] == 'tok'
    assert values['ETCD_LISTEN_PEER_URLS'] == 'http://10.0.0.5:2380'
    assert values['ETCD_LISTEN_CLIENT_URLS'] == 'http://10.0.0.5:2379,http://127.0.0.1:2379'
    assert values['ETCD_ADVERTISE_CLIENT_URLS'] == 'http://10.0.0.5:2379'
    assert values['ETCD_ELECTION_TIMEOUT'] == '5000'
    assert values['ETCD_HEARTBEAT_INTERVAL'] == '1000'
    assert values['ETCD_QUOTA_BACKEND_BYTES'] == '6442450944'


def test_env_for_joining_member():
    cluster = etcd.ClusterConfig()
    current = resolve_node(cluster.topology, '10.0.0.6')
    values = parse_env(etcd._etcd_env(cluster, current, initial_state='existing'))
    assert values['ETCD_INITIAL_CLUSTER_STATE'] == 'existing'


def test_unit():
    unit = etcd._etcd_unit()
    assert 'EnvironmentFile=/etc/etcd/etcd.conf' in unit
    assert 'User=etcd' in unit
    assert 'Type=notify' in unit
    assert 'LimitNOFILE=65536' in unit


def test_version_fact():
    fact = etcd.EtcdVersion()
    assert fact.process(['etcd Version: 3.6.5', 'Git SHA: abc', 'Go Version: go1.24']) == '3.6.5'
    assert fact.process([]) is None
