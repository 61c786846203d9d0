"""Node-side tooling for sharing GPUs in Kubernetes: label-driven config switching, MPS daemons, shm mounts and CUDA result codes."""

__version__ = "0.17.0"