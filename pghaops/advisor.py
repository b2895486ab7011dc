"""
Manual follow-up instructions printed after provisioning. Starting
services and adding etcd members is order-dependent across machines, so
it is left to the operator.
"""

from pghaops.azure import AzureConfig, LoadBalancerSpec
from pghaops.etcd import CONFIG_PATH as ETCD_CONFIG_PATH
from pghaops.patroni import CONFIG_PATH as PATRONI_CONFIG_PATH, ClusterConfig, Credentials, PatroniNode, is_first_node
from pghaops.topology import ClusterTopology, CurrentNode, Node, initial_cluster
from pghaops.workflow import JoinState


RULE = '=' * 73

JOIN_EXISTING = ("sudo sed -i 's/ETCD_INITIAL_CLUSTER_STATE=\"new\"/ETCD_INITIAL_CLUSTER_STATE=\"existing\"/' "
                 f'{ETCD_CONFIG_PATH}')


def _member_add(node: Node) -> str:
    return f'etcdctl member add {node.name} --peer-urls={node.peer_url}'


def _health(topology: ClusterTopology) -> list[str]:
    endpoints = ','.join([node.client_url for node in topology.nodes])
    return [
        f'   etcdctl --endpoints={endpoints} endpoint health',
        '   etcdctl member list',
    ]


def _add_member_steps(topology: ClusterTopology, ordinal: int) -> list[str]:
    joining = topology.nodes[ordinal - 1]
    return [
        f'Add NODE {ordinal} as a member (run on NODE 1):',
        RULE,
        f'   {_member_add(joining)}',
        RULE,
        '',
        '   Expected output:',
        f'   | ETCD_NAME="{joining.name}"',
        f'   | ETCD_INITIAL_CLUSTER="{initial_cluster(topology.nodes[:ordinal])}"',
        '   | ETCD_INITIAL_CLUSTER_STATE="existing"',
        '',
        f'Then on NODE {ordinal} ({joining.ip}), switch to the existing cluster and start etcd:',
        f'   {JOIN_EXISTING}',
        '   sudo systemctl start etcd.service',
        '',
        f'When NODE {ordinal} is running, record it here:',
        f'   pghaops etcd mark node{ordinal}-joined',
    ]


def etcd_next_steps(topology: ClusterTopology, current: CurrentNode, state: JoinState) -> list[str]:
    if current.ordinal == 1:
        return _bootstrap_steps(topology, state)

    first = topology.nodes[0]
    lines = [f'NEXT STEPS (NODE {current.ordinal}):', '']
    if current.ordinal == 2:
        lines += [
            '1) Configure NODE 3 by running pghaops there',
            '',
            '2) Wait for the NODE 1 operator:',
            '   - NODE 1 must start first',
            '   - The NODE 1 operator then adds this node with:',
            f'     {_member_add(current.node)}',
        ]
    else:
        lines += [
            'Node 3 is ready but MUST wait for:',
            '  1) NODE 1 to start',
            '  2) NODE 2 to be added and started',
            '  3) The NODE 1 operator to add this node with:',
            f'     {_member_add(current.node)}',
        ]
    lines += [
        '',
        'After member add completes, switch to the existing cluster and start etcd HERE:',
        f'   {JOIN_EXISTING}',
        '   sudo systemctl start etcd.service',
        '',
        f'Or re-run pghaops with --initial-state existing. NODE 1 ({first.ip}) tracks the join progress.',
    ]
    return lines


def _bootstrap_steps(topology: ClusterTopology, state: JoinState) -> list[str]:
    lines = [f'NEXT STEPS (NODE 1 - bootstrap), progress: {state.value}', '']
    if state == JoinState.NEW:
        lines += [
            '1) Configure NODE 2 and NODE 3 by running pghaops on each node',
            '',
            '2) Start etcd on NODE 1 FIRST:',
            '   sudo systemctl start etcd.service',
            '   sudo systemctl status etcd.service',
            '',
            '3) Verify NODE 1 is running:',
            f'   etcdctl --endpoints={topology.nodes[0].client_url} member list',
            '',
            '4) Record that NODE 1 is up:',
            '   pghaops etcd mark node1-started',
        ]
    elif state == JoinState.NODE1_STARTED:
        lines += _add_member_steps(topology, 2)
    elif state == JoinState.NODE2_JOINED:
        lines += _add_member_steps(topology, 3)
    elif state == JoinState.NODE3_JOINED:
        lines += [
            'Verify full cluster health (run from any node):',
            *_health(topology),
            '',
            'When all three members are healthy, record it:',
            '   pghaops etcd mark complete',
        ]
    else:
        lines += [
            'The etcd cluster is complete. Check it any time with:',
            *_health(topology),
        ]
    return lines


def patroni_next_steps(cluster: ClusterConfig, node: PatroniNode, credentials: Credentials) -> list[str]:
    lines = [
        RULE,
        f'  Node: {node.name}',
        f'  IP: {node.ip}',
        f'  Cluster Name: {cluster.name}',
        f'  Scope: {cluster.scope}',
        f'  PostgreSQL Version: {cluster.postgres_version}',
        RULE,
        '',
        'IMPORTANT - Save these credentials securely:',
        f'| PostgreSQL Superuser: {credentials.superuser_name} / {credentials.superuser}',
        f'| Replication User: {credentials.replicator_name} / {credentials.replicator}',
        f'| Rewind User: {credentials.rewind_name} / {credentials.rewind}',
        f'| REST API: {credentials.restapi_name} / {credentials.restapi}',
        'Every node of the cluster must use the same passwords.',
        '',
        f'  PostgreSQL Port: {cluster.postgres_port}',
        f'  Patroni API Port: {cluster.api_port}',
        '',
        'NEXT STEPS:',
    ]
    if is_first_node(node.name):
        lines += [
            '1) Make sure the etcd cluster is healthy',
            '2) Start Patroni HERE first, it will bootstrap the cluster:',
            '   sudo systemctl start patroni.service',
            '3) Then start Patroni on the other nodes',
        ]
    else:
        lines += [
            '1) Wait until the first node is running as leader',
            '2) Start Patroni here, it will clone the leader:',
            '   sudo systemctl start patroni.service',
        ]
    lines += [
        '',
        'Check cluster status:',
        f'   patronictl -c {PATRONI_CONFIG_PATH} list',
        f'   pghaops patroni verify -n {node.name} -i {node.ip}',
    ]
    return lines


def azure_next_steps(config: AzureConfig, lb: LoadBalancerSpec, address: str) -> list[str]:
    rg = config.resource_group
    return [
        RULE,
        f'  Load Balancer: {lb.name} ({lb.role})',
        f'  Type: {config.lb_type.value}',
        f'  IP Address: {address or "unknown"}',
        RULE,
        '',
        f'  PostgreSQL Port: {lb.rule.frontend_port}',
        f'  Health Probe Port: {lb.probe.port}',
        f'  Health Check Endpoint: {lb.probe.path}',
        '',
        'Test PostgreSQL connection:',
        f'   psql -h {address or "<lb-ip>"} -p {lb.rule.frontend_port} -U postgres -d postgres',
        '',
        'Test health probe (from each node):',
        f'   curl http://localhost:{lb.probe.port}{lb.probe.path}',
        '',
        'Monitor load balancer:',
        f'   az network lb show -g {rg} -n {lb.name} -o table',
        f'   az network lb probe show -g {rg} --lb-name {lb.name} -n {lb.probe.name} -o table',
    ]


AZURE_FINAL_STEPS = [
    'Next Steps:',
    '  1. Verify Patroni is running on all nodes: systemctl status patroni.service',
    '  2. Test health endpoints on each node',
    '  3. Connect to PostgreSQL through the load balancer',
    '  4. Test failover by performing a switchover',
]
