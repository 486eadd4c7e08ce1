import json
import logging
import pytest

from crilist import ContainerSummary, ContainerState
from crilist.storage import StoreOptions

NOW = 1706590956562220088  # 2 hours after CREATED_AT
CREATED_AT = 1706583756562220088


@pytest.fixture(autouse=True)
def logconf(caplog):
    caplog.set_level(logging.DEBUG)


class FakeRuntime:
    """filters on state the way a runtime would, records every filter"""

    def __init__(self, summaries):
        self.summaries = list(summaries)
        self.calls = []

    def list_containers(self, container_filter):
        self.calls.append(container_filter)
        if container_filter.state is None:
            return list(self.summaries)
        return [s for s in self.summaries if s.state == container_filter.state]


def summary(id, name, state=ContainerState.RUNNING, created_at=CREATED_AT):
    return ContainerSummary(id=id, name=name, state=state, created_at=created_at)


@pytest.fixture
def store_options(tmp_path):
    return StoreOptions(
        graph_root=str(tmp_path / 'storage'), graph_driver_name='overlay'
    )


@pytest.fixture
def userdata(store_options):
    """writes config.json and state.json for a container id"""

    def write(id, pid=1478, ip='10.244.0.3', mount_point=None, config=None, state=None):
        path = store_options.containers_dir() / id / 'userdata'
        path.mkdir(parents=True)
        if config is None:
            config = {
                'ociVersion': '1.0.2-dev',
                'root': {'path': mount_point or f'/var/lib/containers/storage/overlay/{id}/merged'},
            }
        if state is None:
            state = {'ociVersion': '1.0.2-dev', 'id': id, 'status': 'running', 'pid': pid,
                     'annotations': {'io.kubernetes.cri-o.IP': ip} if ip else {}}
        for fname, doc in (('config.json', config), ('state.json', state)):
            if isinstance(doc, str):
                (path / fname).write_text(doc)
            else:
                (path / fname).write_text(json.dumps(doc))
        return path

    return write
