from pyinfra import host

from pghaops import patroni


CLUSTER_CONFIG = patroni.ClusterConfig(
    etcd_hosts=[f'{host.data.ip_addresses[name]}:2379' for name in host.data.cluster_hosts],
    name='pgha-test',
    scope='pgha-test',
    # Vagrant VMs have no hardware watchdog
    watchdog_mode='off',
)

# Every node must share these
CREDENTIALS = patroni.Credentials(
    superuser='test-superuser-password',
    replicator='test-replication-password',
    rewind='test-rewind-password',
    restapi='test-restapi-password',
)
