"""Keep a device-plugin config symlink in step with a node label.

The manager watches one Kubernetes node and reads a label naming the config
to use. It points a symlink at the matching file in a source directory, and
can then signal a process so that it reloads its configuration.
"""

from __future__ import annotations

import argparse
import base64
import json
import logging
import os
import signal as signals
import tempfile
import threading
from dataclasses import dataclass, field
from pathlib import Path

import requests
import yaml

log = logging.getLogger(__name__)

RESOURCE_NODES = "nodes"

DEFAULT_ONESHOT = False
DEFAULT_SEND_SIGNAL = True
DEFAULT_SIGNAL = int(signals.SIGHUP)
DEFAULT_PROCESS_TO_SIGNAL = "nvidia-device-plugin"
DEFAULT_CONFIG_LABEL = "nvidia.com/device-plugin.config"

FALLBACK_STRATEGY_NAMED_CONFIG = "named"
FALLBACK_STRATEGY_SINGLE_CONFIG = "single"
FALLBACK_STRATEGY_EMPTY_CONFIG = "empty"

NAMED_CONFIG_FALLBACK = "default"

_SERVICE_ACCOUNT_DIR = Path("/var/run/secrets/kubernetes.io/serviceaccount")
_WATCH_TIMEOUT_SECONDS = 300
_RETRY_DELAY_SECONDS = 1.0


class ConfigManagerError(Exception):
    """Raised when the config manager cannot do what it was asked."""


@dataclass
class Flags:
    """Settings taken from the command line or the environment."""

    oneshot: bool = DEFAULT_ONESHOT
    kubeconfig: str = ""
    node_name: str = ""
    node_label: str = DEFAULT_CONFIG_LABEL
    config_file_srcdir: str = ""
    config_file_dst: str = ""
    default_config: str = ""
    fallback_strategies: list[str] = field(default_factory=list)
    send_signal: bool = DEFAULT_SEND_SIGNAL
    signal: int = DEFAULT_SIGNAL
    process_to_signal: str = DEFAULT_PROCESS_TO_SIGNAL


class SyncableConfig:
    """A config value that readers wait on until it is set.

    A call to ``get`` blocks until a ``set`` happens after the last value
    read. Several calls to ``set`` do not queue: only readers that were
    waiting before a ``set`` are woken by it.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._current = ""
        self._last_read = ""

    def set(self, value: str) -> None:
        with self._cond:
            self._current = value
            self._cond.notify_all()

    def get(self) -> str:
        with self._cond:
            if self._last_read == self._current:
                self._cond.wait()
            self._last_read = self._current
            return self._last_read


class _KubeClient:
    """A minimal client for the Kubernetes core API."""

    def __init__(self, base_url: str, session: requests.Session) -> None:
        self.base_url = base_url.rstrip("/")
        self.session = session

    def get(self, path: str, **kwargs) -> requests.Response:
        return self.session.get(self.base_url + path, **kwargs)


def _write_temp(data: str) -> str:
    with tempfile.NamedTemporaryFile(delete=False) as handle:
        handle.write(base64.b64decode(data))
        return handle.name


def _in_cluster_client() -> _KubeClient:
    host = os.environ.get("KUBERNETES_SERVICE_HOST", "")
    port = os.environ.get("KUBERNETES_SERVICE_PORT", "")
    if not host or not port:
        raise ConfigManagerError(
            "error building kubernetes clientcmd config: "
            "unable to load in-cluster configuration, "
            "KUBERNETES_SERVICE_HOST and KUBERNETES_SERVICE_PORT must be defined"
        )
    session = requests.Session()
    try:
        token = (_SERVICE_ACCOUNT_DIR / "token").read_text().strip()
    except OSError as exc:
        raise ConfigManagerError(
            f"error building kubernetes clientcmd config: {exc}"
        ) from exc
    session.headers["Authorization"] = f"Bearer {token}"
    ca_file = _SERVICE_ACCOUNT_DIR / "ca.crt"
    session.verify = str(ca_file) if ca_file.exists() else True
    if ":" in host:
        host = f"[{host}]"
    return _KubeClient(f"https://{host}:{port}", session)


def _kubeconfig_client(path: str) -> _KubeClient:
    base = Path(path).resolve().parent

    def local(name: str) -> str:
        return str(base / name)

    try:
        with open(path, encoding="utf-8") as handle:
            document = yaml.safe_load(handle) or {}
        contexts = {c["name"]: c.get("context") or {} for c in document.get("contexts") or []}
        clusters = {c["name"]: c.get("cluster") or {} for c in document.get("clusters") or []}
        users = {u["name"]: u.get("user") or {} for u in document.get("users") or []}
        context = contexts[document["current-context"]]
        cluster = clusters[context["cluster"]]
        user = users.get(context.get("user", ""), {})
        server = cluster["server"]
    except (OSError, yaml.YAMLError, KeyError, TypeError) as exc:
        raise ConfigManagerError(
            f"error building kubernetes clientcmd config: {exc}"
        ) from exc

    session = requests.Session()
    if cluster.get("insecure-skip-tls-verify"):
        session.verify = False
    elif "certificate-authority-data" in cluster:
        session.verify = _write_temp(cluster["certificate-authority-data"])
    elif "certificate-authority" in cluster:
        session.verify = local(cluster["certificate-authority"])

    if "client-certificate-data" in user and "client-key-data" in user:
        session.cert = (
            _write_temp(user["client-certificate-data"]),
            _write_temp(user["client-key-data"]),
        )
    elif "client-certificate" in user and "client-key" in user:
        session.cert = (local(user["client-certificate"]), local(user["client-key"]))

    token = user.get("token")
    if not token and "tokenFile" in user:
        try:
            token = Path(local(user["tokenFile"])).read_text().strip()
        except OSError as exc:
            raise ConfigManagerError(
                f"error building kubernetes clientcmd config: {exc}"
            ) from exc
    if token:
        session.headers["Authorization"] = f"Bearer {token}"
    elif "username" in user and "password" in user:
        session.auth = (user["username"], user["password"])

    return _KubeClient(server, session)


def _build_client(kubeconfig: str) -> _KubeClient:
    if kubeconfig:
        return _kubeconfig_client(kubeconfig)
    return _in_cluster_client()


class NodeLabelWatcher:
    """Watch one node and push the value of its config label into a SyncableConfig."""

    def __init__(self, flags: Flags, config: SyncableConfig) -> None:
        self._flags = flags
        self._config = config
        self._labels: dict[str, str] = {}
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._response: requests.Response | None = None
        self._client: _KubeClient | None = None

    def start(self) -> None:
        """Connect to the API server and start watching in a background thread."""
        self._client = _build_client(self._flags.kubeconfig)
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="node-label-watcher", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Stop watching and wait for the background thread to end."""
        self._stop.set()
        response = self._response
        if response is not None:
            response.close()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None

    def _label_of(self, node: dict) -> str:
        labels = (node.get("metadata") or {}).get("labels") or {}
        return labels.get(self._flags.node_label, "")

    def _upsert(self, name: str, label: str) -> None:
        if name in self._labels:
            if self._labels[name] != label:
                self._config.set(label)
        else:
            self._config.set(label)
        self._labels[name] = label

    def _delete(self, name: str, label: str) -> None:
        self._labels.pop(name, None)
        if label != "":
            self._config.set("")

    def _apply_list(self, items: list[dict]) -> None:
        seen = set()
        for node in items:
            name = node["metadata"]["name"]
            seen.add(name)
            self._upsert(name, self._label_of(node))
        for name in set(self._labels) - seen:
            self._delete(name, self._labels[name])

    def _apply_event(self, event_type: str, node: dict) -> None:
        name = node["metadata"]["name"]
        label = self._label_of(node)
        if event_type in ("ADDED", "MODIFIED"):
            self._upsert(name, label)
        elif event_type == "DELETED":
            self._delete(name, label)

    def _selector(self) -> str:
        return f"metadata.name={self._flags.node_name}"

    def _list(self) -> str:
        assert self._client is not None
        response = self._client.get(
            f"/api/v1/{RESOURCE_NODES}",
            params={"fieldSelector": self._selector()},
            timeout=30,
        )
        response.raise_for_status()
        data = response.json()
        self._apply_list(data.get("items") or [])
        return (data.get("metadata") or {}).get("resourceVersion", "")

    def _watch(self, resource_version: str) -> None:
        assert self._client is not None
        response = self._client.get(
            f"/api/v1/{RESOURCE_NODES}",
            params={
                "fieldSelector": self._selector(),
                "watch": "1",
                "resourceVersion": resource_version,
                "timeoutSeconds": str(_WATCH_TIMEOUT_SECONDS),
            },
            stream=True,
            timeout=(30, _WATCH_TIMEOUT_SECONDS + 30),
        )
        self._response = response
        try:
            response.raise_for_status()
            for line in response.iter_lines():
                if self._stop.is_set():
                    return
                if not line:
                    continue
                event = json.loads(line)
                if event.get("type") == "ERROR":
                    log.info("Watch returned an error; relisting: %s", event.get("object"))
                    return
                self._apply_event(event.get("type", ""), event.get("object") or {})
        finally:
            self._response = None
            response.close()

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                resource_version = self._list()
                self._watch(resource_version)
            except (requests.RequestException, ValueError, KeyError) as exc:
                if self._stop.is_set():
                    return
                log.error("Error watching node %s: %s", self._flags.node_name, exc)
                self._stop.wait(_RETRY_DELAY_SECONDS)


def validate_flags(flags: Flags) -> None:
    """Raise ConfigManagerError if a required flag is empty."""
    if flags.node_name == "":
        raise ConfigManagerError("invalid <node-name>: must not be empty string")
    if flags.node_label == "":
        raise ConfigManagerError("invalid <node-label>: must not be empty string")
    if flags.config_file_srcdir == "":
        raise ConfigManagerError("invalid <config-file-srcdir>: must not be empty string")
    if flags.config_file_dst == "":
        raise ConfigManagerError("invalid <config-file-dst>: must not be empty string")


def config_file_names(srcdir: str) -> set[str]:
    """Return the names of the config files available in ``srcdir``.

    Directories and the special ``..``-prefixed entries of mounted
    ConfigMaps are left out.
    """
    try:
        with os.scandir(srcdir) as entries:
            return {
                entry.name
                for entry in entries
                if not entry.is_dir(follow_symlinks=False) and not entry.name.startswith("..")
            }
    except OSError as exc:
        raise ConfigManagerError(f"error reading directory: {exc}") from exc


def file_exists(filename: str) -> bool:
    """Return True if ``filename`` exists and is not a directory."""
    try:
        info = os.stat(filename)
    except FileNotFoundError:
        return False
    return not os.path.isdir(filename) if info else False


def update_config_name(config: str, flags: Flags) -> str:
    """Choose the name of the config to use; "" selects the empty config."""
    try:
        files = config_file_names(flags.config_file_srcdir)
    except ConfigManagerError as exc:
        raise ConfigManagerError(f"error getting list of configuration files: {exc}") from exc

    if not files:
        raise ConfigManagerError("no configuration files available")

    filenames = sorted(files)

    if config != "":
        if config not in files:
            raise ConfigManagerError(f"specified config {config} does not exist")
        return config

    if flags.default_config != "":
        log.info("No value set. Selecting default name: %s", flags.default_config)
        if flags.default_config not in files:
            raise ConfigManagerError(f"specified config {flags.default_config} does not exist")
        return flags.default_config

    log.info(
        "No value set and no default set. Attempting fallback strategies: %s",
        flags.fallback_strategies,
    )
    for fallback in flags.fallback_strategies:
        if fallback == FALLBACK_STRATEGY_NAMED_CONFIG:
            log.info("Attempting to find config named: %s", NAMED_CONFIG_FALLBACK)
            if NAMED_CONFIG_FALLBACK in files:
                return NAMED_CONFIG_FALLBACK
            log.info("No configuration named '%s' was found", NAMED_CONFIG_FALLBACK)
        elif fallback == FALLBACK_STRATEGY_SINGLE_CONFIG:
            log.info("Attempting to see if only a single config is available...")
            if len(filenames) == 1:
                return filenames[0]
            log.info("More than one configuration was found: %s", filenames)
        elif fallback == FALLBACK_STRATEGY_EMPTY_CONFIG:
            log.info("Falling back to an empty configuration")
            return ""
        else:
            raise ConfigManagerError(f"unknown fallback strategy: {fallback}")

    raise ConfigManagerError(
        "no config was set, no default was provided, and all fallbacks failed"
    )


def _realpath(path: str) -> str:
    try:
        return os.path.realpath(path, strict=True)
    except OSError as exc:
        raise ConfigManagerError(f"error evaluating realpath of '{path}': {exc}") from exc


def update_symlink(config: str, flags: Flags) -> bool:
    """Point the destination symlink at ``config``; return False if it already did."""
    src = os.path.join(flags.config_file_srcdir, config) if config else "/dev/null"
    dst = flags.config_file_dst

    try:
        exists = file_exists(dst)
    except OSError as exc:
        raise ConfigManagerError(f"error checking if file '{dst}' exists: {exc}") from exc

    if exists:
        if _realpath(src) == _realpath(dst):
            return False
        try:
            os.remove(dst)
        except OSError as exc:
            raise ConfigManagerError(f"error removing existing config: {exc}") from exc

    try:
        os.symlink(src, dst)
    except OSError as exc:
        raise ConfigManagerError(f"error creating symlink: {exc}") from exc
    return True


def _signal_name(number: int) -> str:
    try:
        return signals.Signals(number).name
    except ValueError:
        return f"signal {number}"


def update_config(config: str, flags: Flags) -> bool:
    """Apply the config selected by ``config``; return True if anything changed."""
    config = update_config_name(config, flags)

    if config == "":
        log.info("Updating to empty config")
    else:
        log.info("Updating to config: %s", config)

    if not update_symlink(config, flags):
        log.info("Already configured. Skipping update...")
        return False

    if config == "":
        log.info("Successfully updated to empty config")
    else:
        log.info("Successfully updated to config: %s", config)

    if flags.send_signal:
        log.info("Sending signal '%s' to '%s'", _signal_name(flags.signal), flags.process_to_signal)
        signal_process(flags)
        log.info("Successfully sent signal")

    return True


def find_pid_to_signal(process_name: str, proc_root: str = "/proc") -> int:
    """Return the pid of the first process whose argv[0] is ``process_name``."""
    try:
        pids = sorted(int(name) for name in os.listdir(proc_root) if name.isdigit())
    except OSError as exc:
        raise ConfigManagerError(f"error getting list of all procs: {exc}") from exc

    for pid in pids:
        try:
            raw = Path(proc_root, str(pid), "cmdline").read_bytes()
        except FileNotFoundError:
            continue
        except OSError as exc:
            raise ConfigManagerError(f"error getting cmdline: {exc}") from exc
        cmdline = raw.rstrip(b"\0").split(b"\0") if raw else []
        if cmdline and cmdline[0].decode(errors="replace") == process_name:
            return pid

    raise ConfigManagerError("no process found")


def signal_process(flags: Flags) -> None:
    """Send the configured signal to the configured process."""
    try:
        pid = find_pid_to_signal(flags.process_to_signal)
    except ConfigManagerError as exc:
        raise ConfigManagerError(f"error finding pid: {exc}") from exc
    try:
        os.kill(pid, flags.signal)
    except OSError as exc:
        raise ConfigManagerError(f"error sending signal: {exc}") from exc


_TRUE = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE = {"0", "f", "F", "FALSE", "false", "False"}


def _parse_bool(value: str) -> bool:
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ValueError(f"invalid boolean value: {value!r}")


def _split_list(values: list[str]) -> list[str]:
    return [part.strip() for value in values for part in value.split(",") if part.strip()]


def parse_args(argv: list[str] | None = None) -> Flags:
    """Build Flags from the command line, falling back to environment variables."""
    parser = argparse.ArgumentParser(prog="config-manager")
    env = os.environ

    def env_bool(name: str, default: bool) -> bool:
        if name not in env:
            return default
        try:
            return _parse_bool(env[name])
        except ValueError as exc:
            parser.error(f"could not parse {name}: {exc}")
            raise

    def env_int(name: str, default: int) -> int:
        if name not in env:
            return default
        try:
            return int(env[name])
        except ValueError:
            parser.error(f"could not parse {name}: invalid integer {env[name]!r}")
            raise

    parser.add_argument(
        "--oneshot", nargs="?", const=True, type=_parse_bool,
        default=env_bool("ONESHOT", DEFAULT_ONESHOT),
        help="check and update the config only once and then exit",
    )
    parser.add_argument(
        "--kubeconfig", default=env.get("KUBECONFIG", ""),
        help="absolute path to the kubeconfig file",
    )
    parser.add_argument(
        "--node-name", default=env.get("NODE_NAME", ""),
        help="the name of the node to watch for label changes on",
    )
    parser.add_argument(
        "--node-label", default=env.get("NODE_LABEL", DEFAULT_CONFIG_LABEL),
        help="the name of the node label to use for selecting a config",
    )
    parser.add_argument(
        "--config-file-srcdir", default=env.get("CONFIG_FILE_SRCDIR", ""),
        help="the path to the directory containing available device configuration files",
    )
    parser.add_argument(
        "--config-file-dst", default=env.get("CONFIG_FILE_DST", ""),
        help="the path to destination device configuration file",
    )
    parser.add_argument(
        "--default-config", default=env.get("DEFAULT_CONFIG", ""),
        help="the default config to use if no label is set",
    )
    parser.add_argument(
        "--fallback-strategies", action="append", default=None,
        help="ordered list of fallback strategies to use to set a default config when none is provided",
    )
    parser.add_argument(
        "--send-signal", nargs="?", const=True, type=_parse_bool,
        default=env_bool("SEND_SIGNAL", DEFAULT_SEND_SIGNAL),
        help="send a signal to <process-to-signal> once a config change is made",
    )
    parser.add_argument(
        "--signal", type=int, default=env_int("SIGNAL", DEFAULT_SIGNAL),
        help="the signal to sent to <process-to-signal> if <send-signal> is set",
    )
    parser.add_argument(
        "--process-to-signal", default=env.get("PROCESS_TO_SIGNAL", DEFAULT_PROCESS_TO_SIGNAL),
        help="the name of the process to signal if <send-signal> is set",
    )

    args = parser.parse_args(argv)
    strategies = args.fallback_strategies
    if strategies is None:
        strategies = [env["FALLBACK_STRATEGIES"]] if "FALLBACK_STRATEGIES" in env else []

    return Flags(
        oneshot=args.oneshot,
        kubeconfig=args.kubeconfig,
        node_name=args.node_name,
        node_label=args.node_label,
        config_file_srcdir=args.config_file_srcdir,
        config_file_dst=args.config_file_dst,
        default_config=args.default_config,
        fallback_strategies=_split_list(strategies),
        send_signal=args.send_signal,
        signal=args.signal,
        process_to_signal=args.process_to_signal,
    )


def _run(flags: Flags) -> None:
    config = SyncableConfig()
    watcher = NodeLabelWatcher(flags, config)
    watcher.start()
    try:
        while True:
            log.info("Waiting for change to '%s' label", flags.node_label)
            value = config.get()
            log.info("Label change detected: %s=%s", flags.node_label, value)
            update_config(value, flags)
            if flags.oneshot:
                return
    finally:
        watcher.stop()


def main(argv: list[str] | None = None) -> int:
    """Run the config manager; return the process exit status."""
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
    try:
        flags = parse_args(argv)
        validate_flags(flags)
        _run(flags)
    except ConfigManagerError as exc:
        log.error("%s", exc)
        return 1
    except KeyboardInterrupt:
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())