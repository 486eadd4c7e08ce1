from textwrap import dedent
from pathlib import Path
import pytest

from crilist.storage import IDMap, StoreOptions, load_store_options, parse_id_map

STORAGE_CONF = dedent('''\
    [storage]
    driver = "overlay"
    runroot = "/run/containers/storage"
    graphroot = "/var/lib/containers/storage"

    [storage.options]
    additionalimagestores = ["/var/lib/shared", "/mnt/images"]
    size = "10G"
    mount_program = "/usr/bin/fuse-overlayfs"
    mountopt = "nodev,metacopy=on"
    remap-uids = "0:1668442479:65536"
    remap-gids = "0:1668442479:65536"

    [storage.options.thinpool]
    autoextend_percent = "20"
    basesize = "10G"
    use_deferred_removal = "True"
    ''')

SUBUID = dedent('''\
    # comment
    containers:100000:65536
    other:300000:65536
    containers:200000:1000
    ''')


def write(tmp_path, name, data):
    path = tmp_path / name
    path.write_text(data)
    return path


def test_load(tmp_path):
    conf = write(tmp_path, 'storage.conf', STORAGE_CONF)
    options = load_store_options(conf, environ={})
    assert options.graph_root == '/var/lib/containers/storage'
    assert options.run_root == '/run/containers/storage'
    assert options.graph_driver_name == 'overlay'
    assert options.containers_dir() == Path('/var/lib/containers/storage/overlay-containers')
    assert options.graph_driver_options == [
        'dm.thinp_autoextend_percent=20',
        'dm.basesize=10G',
        'dm.use_deferred_removal=True',
        'overlay.imagestore=/var/lib/shared',
        'overlay.imagestore=/mnt/images',
        'overlay.size=10G',
        'overlay.mount_program=/usr/bin/fuse-overlayfs',
        'overlay.mountopt=nodev,metacopy=on',
    ]
    assert options.uid_map == [IDMap(0, 1668442479, 65536)]
    assert options.gid_map == [IDMap(0, 1668442479, 65536)]


def test_missing_file(tmp_path):
    options = load_store_options(tmp_path / 'nope.conf', environ={})
    assert options == StoreOptions()


def test_missing_file_env(tmp_path):
    options = load_store_options(
        tmp_path / 'nope.conf',
        environ={'STORAGE_DRIVER': 'vfs', 'STORAGE_OPTS': 'vfs.a=1,vfs.b=2'},
    )
    assert options.graph_driver_name == 'vfs'
    assert options.graph_driver_options == ['vfs.a=1', 'vfs.b=2']
    assert options.containers_dir() == Path('vfs-containers')


def test_invalid_toml(tmp_path, caplog):
    conf = write(tmp_path, 'storage.conf', '[storage\ndriver = ')
    options = load_store_options(conf, environ={'STORAGE_DRIVER': 'vfs'})
    # env is not applied either
    assert options == StoreOptions()
    assert 'failed to parse' in caplog.text


@pytest.mark.parametrize('data,key', [
    ('storage = "overlay"\n', 'storage should be a dict'),
    ('[storage]\ngraphroot = 5\n', 'storage.graphroot should be a str'),
    ('[storage]\ndriver = ["overlay"]\n', 'storage.driver should be a str'),
    ('[storage]\noptions = "size=10G"\n', 'storage.options should be a dict'),
    ('[storage.options]\nthinpool = 1\n', 'storage.options.thinpool should be a dict'),
    ('[storage.options]\nadditionalimagestores = "/mnt"\n',
     'storage.options.additionalimagestores should be a list'),
    ('[storage.options]\nremap-uids = 0\n', 'storage.options.remap-uids should be a str'),
])
def test_mistyped_config(tmp_path, caplog, data, key):
    conf = write(tmp_path, 'storage.conf', data)
    options = load_store_options(conf, environ={'STORAGE_DRIVER': 'vfs'})
    assert options == StoreOptions()
    assert 'failed to parse' in caplog.text
    assert key in caplog.text


def test_env_overrides(tmp_path):
    conf = write(tmp_path, 'storage.conf', STORAGE_CONF)
    options = load_store_options(
        conf, environ={'STORAGE_DRIVER': 'btrfs', 'STORAGE_OPTS': 'btrfs.min_space=1G'}
    )
    assert options.graph_driver_name == 'btrfs'
    assert options.graph_driver_options[-1] == 'btrfs.min_space=1G'
    assert options.graph_root == '/var/lib/containers/storage'


def test_empty_storage_opts(tmp_path):
    conf = write(tmp_path, 'storage.conf', '[storage]\ndriver = "overlay"\n')
    options = load_store_options(conf, environ={'STORAGE_OPTS': ''})
    assert options.graph_driver_options == []
    assert options.graph_root == ''


@pytest.mark.parametrize(
    'remap',
    [
        'remap-user = "containers"\nremap-group = "containers"\n',
        'remap-user = "containers"\n',
        'remap-group = "containers"\n',
    ],
)
def test_remap_user_group(tmp_path, remap):
    conf = write(tmp_path, 'storage.conf', '[storage.options]\n' + remap)
    subuid = write(tmp_path, 'subuid', SUBUID)
    subgid = write(tmp_path, 'subgid', 'containers:500000:65536\n')
    options = load_store_options(conf, environ={}, subuid=subuid, subgid=subgid)
    assert options.uid_map == [IDMap(0, 100000, 65536), IDMap(65536, 200000, 1000)]
    assert options.gid_map == [IDMap(0, 500000, 65536)]


def test_remap_user_missing(tmp_path, caplog):
    conf = write(
        tmp_path,
        'storage.conf',
        '[storage]\ndriver = "overlay"\n[storage.options]\nremap-user = "nobody"\n',
    )
    subuid = write(tmp_path, 'subuid', SUBUID)
    options = load_store_options(
        conf, environ={'STORAGE_DRIVER': 'vfs'}, subuid=subuid, subgid=subuid
    )
    assert options.uid_map == []
    assert options.graph_driver_name == 'overlay'
    assert 'error initializing ID mappings' in caplog.text


@pytest.mark.parametrize(
    'spec,expected',
    [
        ('', []),
        ('0:1000:1', [IDMap(0, 1000, 1)]),
        ('0:1000:1,1:2000:10', [IDMap(0, 1000, 1), IDMap(1, 2000, 10)]),
        ('0,1000,1', [IDMap(0, 1000, 1)]),
    ],
)
def test_parse_id_map(spec, expected):
    assert parse_id_map(spec, 'remap-uids') == expected


@pytest.mark.parametrize('spec', ['0:1000', '0:a:1'])
def test_parse_id_map_invalid(spec):
    with pytest.raises(ValueError) as e:
        parse_id_map(spec, 'remap-uids')
    assert 'remap-uids' in str(e.value)


def test_bad_remap_uids_logged(tmp_path, caplog):
    conf = write(tmp_path, 'storage.conf', '[storage.options]\nremap-uids = "0:1"\n')
    options = load_store_options(conf, environ={})
    assert options.uid_map == []
    assert 'remap-uids' in caplog.text
