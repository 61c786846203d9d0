import os
import signal
import threading
import time

import pytest

from gpushare.config_manager import (
    ConfigManagerError,
    Flags,
    NodeLabelWatcher,
    SyncableConfig,
    config_file_names,
    file_exists,
    find_pid_to_signal,
    main,
    parse_args,
    update_config,
    update_config_name,
    update_symlink,
    validate_flags,
)

ENV_NAMES = [
    "ONESHOT", "KUBECONFIG", "NODE_NAME", "NODE_LABEL", "CONFIG_FILE_SRCDIR",
    "CONFIG_FILE_DST", "DEFAULT_CONFIG", "FALLBACK_STRATEGIES", "SEND_SIGNAL",
    "SIGNAL", "PROCESS_TO_SIGNAL",
]


@pytest.fixture
def clean_env(monkeypatch):
    for name in ENV_NAMES:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


@pytest.fixture
def srcdir(tmp_path):
    src = tmp_path / "configs"
    src.mkdir()
    return src


def make_flags(srcdir, tmp_path, **kwargs):
    values = dict(
        node_name="node",
        config_file_srcdir=str(srcdir),
        config_file_dst=str(tmp_path / "config.yaml"),
        send_signal=False,
    )
    values.update(kwargs)
    return Flags(**values)


def test_syncable_config_set_then_get():
    config = SyncableConfig()
    config.set("a")
    assert config.get() == "a"


def test_syncable_config_get_blocks_until_set():
    config = SyncableConfig()
    config.set("a")
    assert config.get() == "a"
    result = []
    reader = threading.Thread(target=lambda: result.append(config.get()))
    reader.start()
    time.sleep(0.1)
    assert result == []
    config.set("b")
    reader.join(timeout=5)
    assert result == ["b"]


@pytest.mark.parametrize(
    "field, message",
    [
        ("node_name", "invalid <node-name>"),
        ("node_label", "invalid <node-label>"),
        ("config_file_srcdir", "invalid <config-file-srcdir>"),
        ("config_file_dst", "invalid <config-file-dst>"),
    ],
)
def test_validate_flags_rejects_empty(field, message):
    flags = Flags(node_name="n", config_file_srcdir="s", config_file_dst="d")
    setattr(flags, field, "")
    with pytest.raises(ConfigManagerError, match=message):
        validate_flags(flags)


def test_validate_flags_accepts_complete():
    flags = Flags(node_name="n", config_file_srcdir="s", config_file_dst="d")
    validate_flags(flags)
    assert flags.node_label == "nvidia.com/device-plugin.config"


def test_config_file_names_excludes_dirs_and_dotdot(srcdir):
    (srcdir / "a").write_text("x")
    (srcdir / "b").write_text("y")
    (srcdir / "..data").write_text("z")
    (srcdir / "sub").mkdir()
    assert config_file_names(str(srcdir)) == {"a", "b"}


def test_config_file_names_missing_dir(tmp_path):
    with pytest.raises(ConfigManagerError, match="error reading directory"):
        config_file_names(str(tmp_path / "missing"))


def test_file_exists(tmp_path):
    f = tmp_path / "f"
    f.write_text("x")
    assert file_exists(str(f)) is True
    assert file_exists(str(tmp_path)) is False
    assert file_exists(str(tmp_path / "missing")) is False


def test_update_config_name_explicit(srcdir, tmp_path):
    (srcdir / "a").write_text("x")
    (srcdir / "b").write_text("x")
    flags = make_flags(srcdir, tmp_path)
    assert update_config_name("b", flags) == "b"
    with pytest.raises(ConfigManagerError, match="does not exist"):
        update_config_name("c", flags)


def test_update_config_name_default(srcdir, tmp_path):
    (srcdir / "a").write_text("x")
    (srcdir / "b").write_text("x")
    assert update_config_name("", make_flags(srcdir, tmp_path, default_config="a")) == "a"
    with pytest.raises(ConfigManagerError, match="does not exist"):
        update_config_name("", make_flags(srcdir, tmp_path, default_config="zzz"))


def test_update_config_name_no_files(srcdir, tmp_path):
    with pytest.raises(ConfigManagerError, match="no configuration files available"):
        update_config_name("", make_flags(srcdir, tmp_path))


def test_fallback_named(srcdir, tmp_path):
    (srcdir / "default").write_text("x")
    (srcdir / "other").write_text("x")
    flags = make_flags(srcdir, tmp_path, fallback_strategies=["named", "single"])
    assert update_config_name("", flags) == "default"


def test_fallback_single(srcdir, tmp_path):
    (srcdir / "only").write_text("x")
    flags = make_flags(srcdir, tmp_path, fallback_strategies=["named", "single"])
    assert update_config_name("", flags) == "only"


def test_fallback_empty(srcdir, tmp_path):
    (srcdir / "a").write_text("x")
    (srcdir / "b").write_text("x")
    flags = make_flags(srcdir, tmp_path, fallback_strategies=["named", "single", "empty"])
    assert update_config_name("", flags) == ""


def test_fallback_unknown(srcdir, tmp_path):
    (srcdir / "a").write_text("x")
    flags = make_flags(srcdir, tmp_path, fallback_strategies=["bogus"])
    with pytest.raises(ConfigManagerError, match="unknown fallback strategy: bogus"):
        update_config_name("", flags)


def test_fallbacks_all_fail(srcdir, tmp_path):
    (srcdir / "a").write_text("x")
    (srcdir / "b").write_text("x")
    flags = make_flags(srcdir, tmp_path, fallback_strategies=["named", "single"])
    with pytest.raises(ConfigManagerError, match="all fallbacks failed"):
        update_config_name("", flags)


def test_update_symlink_creates_and_skips(srcdir, tmp_path):
    (srcdir / "a").write_text("x")
    (srcdir / "b").write_text("y")
    flags = make_flags(srcdir, tmp_path)
    assert update_symlink("a", flags) is True
    assert os.readlink(flags.config_file_dst) == str(srcdir / "a")
    assert update_symlink("a", flags) is False
    assert update_symlink("b", flags) is True
    assert os.readlink(flags.config_file_dst) == str(srcdir / "b")


def test_update_symlink_empty_points_at_dev_null(srcdir, tmp_path):
    flags = make_flags(srcdir, tmp_path)
    assert update_symlink("", flags) is True
    assert os.readlink(flags.config_file_dst) == "/dev/null"
    assert update_symlink("", flags) is False


def test_update_config_reports_change(srcdir, tmp_path):
    (srcdir / "a").write_text("x")
    flags = make_flags(srcdir, tmp_path)
    assert update_config("a", flags) is True
    assert update_config("a", flags) is False
    assert os.path.realpath(flags.config_file_dst) == os.path.realpath(srcdir / "a")


def test_find_pid_to_signal(tmp_path):
    for pid, cmdline in [("12", b"other\0arg\0"), ("7", b"nvidia-device-plugin\0--x\0"), ("3", b"")]:
        (tmp_path / pid).mkdir()
        (tmp_path / pid / "cmdline").write_bytes(cmdline)
    (tmp_path / "self").mkdir()
    assert find_pid_to_signal("nvidia-device-plugin", str(tmp_path)) == 7
    assert find_pid_to_signal("other", str(tmp_path)) == 12
    with pytest.raises(ConfigManagerError, match="no process found"):
        find_pid_to_signal("missing", str(tmp_path))


def test_parse_args_defaults(clean_env):
    flags = parse_args([])
    assert flags.oneshot is False
    assert flags.send_signal is True
    assert flags.signal == int(signal.SIGHUP)
    assert flags.process_to_signal == "nvidia-device-plugin"
    assert flags.node_label == "nvidia.com/device-plugin.config"
    assert flags.fallback_strategies == []


def test_parse_args_env_and_cli(clean_env):
    clean_env.setenv("NODE_NAME", "node-a")
    clean_env.setenv("FALLBACK_STRATEGIES", "named,single")
    clean_env.setenv("SEND_SIGNAL", "false")
    flags = parse_args(["--oneshot", "--config-file-dst", "/tmp/dst"])
    assert flags.node_name == "node-a"
    assert flags.fallback_strategies == ["named", "single"]
    assert flags.send_signal is False
    assert flags.oneshot is True
    assert flags.config_file_dst == "/tmp/dst"


def test_parse_args_repeated_fallbacks(clean_env):
    flags = parse_args(["--fallback-strategies", "named", "--fallback-strategies", "empty"])
    assert flags.fallback_strategies == ["named", "empty"]


def test_main_fails_on_invalid_flags(clean_env):
    assert main(["--node-name", "n"]) == 1


def node(name, labels):
    return {"metadata": {"name": name, "labels": labels}}


def test_watcher_list_and_events():
    flags = Flags(node_name="n1")
    config = SyncableConfig()
    watcher = NodeLabelWatcher(flags, config)
    watcher._apply_list([node("n1", {flags.node_label: "cfg-a"})])
    assert config.get() == "cfg-a"
    watcher._apply_event("MODIFIED", node("n1", {flags.node_label: "cfg-b"}))
    assert config.get() == "cfg-b"
    watcher._apply_event("DELETED", node("n1", {flags.node_label: "cfg-b"}))
    assert config.get() == ""
    assert watcher._labels == {}


def test_watcher_relist_drops_missing_node():
    flags = Flags(node_name="n1")
    config = SyncableConfig()
    watcher = NodeLabelWatcher(flags, config)
    watcher._apply_list([node("n1", {flags.node_label: "cfg-a"})])
    assert config.get() == "cfg-a"
    watcher._apply_list([])
    assert config.get() == ""
    assert watcher._labels == {}