# gpushare

Node-side helpers for running shared GPUs in a Kubernetes cluster.

The package covers:

- **Config switching by node label** (`gpushare.config_manager`). An agent
  watches one label on its own node and points a configuration symlink at
  the file the label names, then signals the process that reads that file
  so it reloads.
- **MPS control daemons** (`gpushare.mps_daemon`, `gpushare.mps_device`,
  `gpushare.mps_root`, `gpushare.log_tailer`). Starting, stopping and
  health-checking an MPS control daemon for one resource, with per-device
  pinned-memory limits and an active-thread percentage derived from the
  number of replicas.
- **The shared-memory mount** (`gpushare.shm_mount`) the MPS daemon needs.
- **Small support pieces.** Resolving libraries under a mounted driver root
  (`gpushare.driver_root`) and CUDA result codes with readable names
  (`gpushare.cuda_result`).

## Installation

```
pip install gpushare
```

For running the test suite:

```
pip install "gpushare[test]"
pytest
```

## Commands

### `gpushare-config-manager`

Watches the node named by `--node-name` for changes to the label given by
`--node-label` (default `nvidia.com/device-plugin.config`). Whenever the
label changes, the file with that name in `--config-file-srcdir` is linked
to `--config-file-dst`. If the link changed and `--send-signal` is on (the
default), the first process whose command name equals `--process-to-signal`
(default `nvidia-device-plugin`) is sent the signal number given by
`--signal` (default `SIGHUP`).

```
gpushare-config-manager \
    --node-name my-node \
    --config-file-srcdir /available-configs \
    --config-file-dst /config/config.yaml \
    --fallback-strategies named,single
```

`--node-name`, `--node-label`, `--config-file-srcdir` and
`--config-file-dst` must not be empty. Every option can also be set from
the environment (`NODE_NAME`, `NODE_LABEL`, `CONFIG_FILE_SRCDIR`,
`CONFIG_FILE_DST`, `DEFAULT_CONFIG`, `FALLBACK_STRATEGIES`, `SEND_SIGNAL`,
`SIGNAL`, `PROCESS_TO_SIGNAL`, `ONESHOT`, `KUBECONFIG`); a command-line
option wins over its variable. `--fallback-strategies` takes a
comma-separated list and may be repeated.

The API server is reached through the file named by `--kubeconfig`, or,
when that is empty, through the in-cluster service account.

When the label is unset the config is chosen as follows:

1. `--default-config`, if given (it must exist);
2. otherwise each fallback strategy in order:
   - `named` — a config called `default`,
   - `single` — the only config, if there is exactly one,
   - `empty` — no config at all (the destination is linked to `/dev/null`).

An unknown strategy, a label naming a missing config, or no strategy
matching ends the run with exit status 1. Files whose names start with `..`
(the bookkeeping entries of a mounted ConfigMap) and directories are never
treated as configs. With `--oneshot` the agent applies the first label
value it sees and exits.

### `gpushare-mount-shm`

Mounts a tmpfs at `/mps/shm`, sized at half of the `MemTotal` reported in
`/proc/meminfo` (falling back to `65536k`), with the options
`rw,nosuid,nodev,noexec,relatime`. Whatever is already at that path is
unmounted and removed first, and the directory is created again.

```
gpushare-mount-shm
```

## Library use

### Choosing a config

```python
from gpushare.config_manager import Flags, update_config_name, update_config

flags = Flags(
    node_name="my-node",
    config_file_srcdir="/available-configs",
    config_file_dst="/config/config.yaml",
    fallback_strategies=["named", "single"],
)
name = update_config_name("", flags)   # raises ConfigManagerError if none fits
changed = update_config("", flags)     # relinks, signals; False if already set
```

`SyncableConfig` hands label values from the `NodeLabelWatcher` thread to
the main loop: `get()` blocks until a `set()` happens after the last value
read. `find_pid_to_signal(name, proc_root="/proc")` looks a process up by
its first command-line word.

### MPS devices and roots

```python
from gpushare.mps_device import MpsDevice, compare_versions
from gpushare.mps_root import Root, CONTAINER_ROOT

device = MpsDevice(compute_capability="7.5", replicas=10)
device.is_at_least_volta()  # True for compute capability 7.5 and later
device.max_clients()        # 48 from 7.5 on, 16 before
device.assert_replicas()    # raises InvalidDeviceError when exceeded

root = Root("/mps")                  # the same as CONTAINER_ROOT
root.pipe_dir("nvidia.com/gpu")      # /mps/nvidia.com/gpu/pipe
root.log_dir("nvidia.com/gpu")       # /mps/nvidia.com/gpu/log
root.started_file("nvidia.com/gpu")  # /mps/nvidia.com/gpu/.started
root.shm_dir("nvidia.com/gpu")       # /mps/shm
```

### Running an MPS daemon

`Daemon(resource_manager, root)` takes any object matching the
`ResourceManager` protocol — a `resource` name and a `devices()` method
returning devices with `index`, `uuid` and `total_memory` — together with
a `Root`.

- `start()` puts each device into `EXCLUSIVE_PROCESS` compute mode with
  `nvidia-smi`, creates the pipe and log directories (labelling the pipe
  directory for containers when SELinux is on), runs
  `nvidia-cuda-mps-control -d`, sends the pinned-memory and thread limits,
  writes the started file and tails `control.log`.
- `stop()` sends `quit`, stops the log tail, restores `DEFAULT` compute
  mode, removes the started file and the log directory.
- `assert_healthy()` queries the daemon and raises `DaemonError` if it
  does not answer; `echo_pipe_to_control(command)` sends any command and
  returns the output.
- `env_vars()` gives `CUDA_MPS_PIPE_DIRECTORY` and `CUDA_MPS_LOG_DIRECTORY`
  for client containers.

`Tailer(filename)` runs `tail -n +1 -f` on a file; it can be used as a
context manager.

### CUDA results

```python
from gpushare.cuda_result import Result, CudaError, result_string, c_string

str(Result.ERROR_NO_DEVICE)     # "CUDA_ERROR_NO_DEVICE"
result_string(12345)            # "Unknown return value: 12345"
c_string(b"Tesla\0\0\0")        # "Tesla"
raise CudaError(Result.ERROR_NOT_INITIALIZED)
```

### Driver roots

```python
from gpushare.driver_root import DriverRoot

root = DriverRoot("/driver-root")
root.dev_root()                                 # the root if it has /dev, else "/"
root.try_resolve_library("libnvidia-ml.so.1")   # resolved path or the bare name
```

## What this package does not do

- It has no device plugin server, no GPU discovery and no label generation;
  nothing here registers resources with the kubelet.
- It does not decide which daemons to run: there is no command that reads
  a sharing configuration and starts `Daemon` instances. Callers build each
  `Daemon` with their own `ResourceManager`.
- It does not load or call the CUDA driver; `gpushare.cuda_result` only
  names result codes and device attributes.