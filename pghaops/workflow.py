from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
import json
import os


DEFAULT_STATE_FILE = '/var/lib/pghaops/etcd-join-state.json'


class JoinState(Enum):
    NEW = 'new'
    NODE1_STARTED = 'node1-started'
    NODE2_JOINED = 'node2-joined'
    NODE3_JOINED = 'node3-joined'
    CLUSTER_COMPLETE = 'complete'


# Members must be added one at a time, in topology order
TRANSITIONS = {
    JoinState.NEW: JoinState.NODE1_STARTED,
    JoinState.NODE1_STARTED: JoinState.NODE2_JOINED,
    JoinState.NODE2_JOINED: JoinState.NODE3_JOINED,
    JoinState.NODE3_JOINED: JoinState.CLUSTER_COMPLETE,
}


class InvalidTransitionError(Exception):
    pass


@dataclass
class JoinWorkflow:
    """
    Progress of bootstrapping an etcd cluster, as confirmed by the operator.
    Nothing here talks to etcd; it only remembers what has been done so
    that instructions for a later step are never given too early.

    Arguments:
        cluster_token: Token of the cluster this state belongs to.
        state: Current state.
        history: (state, ISO timestamp) pairs of confirmed transitions.
    """

    cluster_token: str
    state: JoinState = field(default=JoinState.NEW)
    history: list[tuple[str, str]] = field(default_factory=list)

    @property
    def next_state(self) -> JoinState | None:
        return TRANSITIONS.get(self.state)

    def advance(self, target: JoinState):
        if self.next_state != target:
            expected = self.next_state.value if self.next_state else 'nothing, the cluster is complete'
            raise InvalidTransitionError(
                f'cannot go from {self.state.value} to {target.value}; expected {expected}')
        self.state = target
        self.history.append((target.value, datetime.now(timezone.utc).isoformat(timespec='seconds')))

    @classmethod
    def load(cls, path: str, cluster_token: str) -> 'JoinWorkflow':
        try:
            with open(path, 'r') as f:
                data = json.load(f)
        except FileNotFoundError:
            return cls(cluster_token=cluster_token)

        if data.get('cluster_token') != cluster_token:
            raise InvalidTransitionError(
                f'state file {path} belongs to cluster {data.get("cluster_token")}, not {cluster_token}')
        return cls(
            cluster_token=cluster_token,
            state=JoinState(data['state']),
            history=[tuple(entry) for entry in data.get('history', [])],
        )

    def save(self, path: str):
        data = asdict(self)
        data['state'] = self.state.value
        os.makedirs(os.path.dirname(path) or '.', exist_ok=True)
        # Truncate the file before writing new state
        with open(path, 'w') as f:
            f.truncate(0)
            f.write(json.dumps(data, indent=4, sort_keys=True))
