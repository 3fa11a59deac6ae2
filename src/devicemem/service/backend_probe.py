from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any, Callable

import psutil

logger = logging.getLogger(__name__)

ACCELERATED = "accelerated"
FALLBACK = "fallback"


@dataclass(frozen=True)
class Accelerator:
    device: str
    description: str


@dataclass(frozen=True)
class HostResources:
    memory_gb: float
    cpu_cores: int


@dataclass(frozen=True)
class BackendDecision:
    backend: str
    device: str
    reason: str
    adapter: str = ""
    memory_gb: float = 0.0
    cpu_cores: int = 0

    @property
    def accelerated(self) -> bool:
        return self.backend == ACCELERATED

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def detect_accelerator() -> Accelerator | None:
    try:
        import torch
    except Exception:
        return None
    try:
        if torch.cuda.is_available():
            return Accelerator(device="cuda", description=str(torch.cuda.get_device_name(0)))
        mps = getattr(torch.backends, "mps", None)
        if mps is not None and mps.is_available():
            return Accelerator(device="mps", description="apple metal performance shaders")
    except Exception as exc:
        logger.debug("accelerator detection failed: %s", exc)
    return None


def host_resources() -> HostResources:
    total = psutil.virtual_memory().total
    return HostResources(
        memory_gb=round(total / (1024**3), 2),
        cpu_cores=int(psutil.cpu_count(logical=True) or 1),
    )


def probe_backend(
    *,
    preference: str = "auto",
    min_memory_gb: float = 4.0,
    min_cpu_cores: int = 4,
    denylist: tuple[str, ...] = (),
    detect: Callable[[], Accelerator | None] = detect_accelerator,
    resources: Callable[[], HostResources] = host_resources,
) -> BackendDecision:
    host = resources()
    if preference == FALLBACK:
        return BackendDecision(
            backend=FALLBACK,
            device="cpu",
            reason="forced by configuration",
            memory_gb=host.memory_gb,
            cpu_cores=host.cpu_cores,
        )
    accel = detect()
    if accel is None:
        return BackendDecision(
            backend=FALLBACK,
            device="cpu",
            reason="no accelerated backend",
            memory_gb=host.memory_gb,
            cpu_cores=host.cpu_cores,
        )
    desc = accel.description.lower()
    blocked = next((name for name in denylist if name and name in desc), None)
    if preference != ACCELERATED:
        reason = ""
        if host.memory_gb < min_memory_gb:
            reason = f"host memory {host.memory_gb}GB below {min_memory_gb}GB"
        elif host.cpu_cores < min_cpu_cores:
            reason = f"{host.cpu_cores} logical cores below {min_cpu_cores}"
        elif blocked:
            reason = f"software adapter '{blocked}'"
        if reason:
            return BackendDecision(
                backend=FALLBACK,
                device="cpu",
                reason=reason,
                adapter=accel.description,
                memory_gb=host.memory_gb,
                cpu_cores=host.cpu_cores,
            )
    return BackendDecision(
        backend=ACCELERATED,
        device=accel.device,
        reason="forced by configuration" if preference == ACCELERATED else "ok",
        adapter=accel.description,
        memory_gb=host.memory_gb,
        cpu_cores=host.cpu_cores,
    )
