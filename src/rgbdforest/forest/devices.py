"""Execution devices for tree training and prediction."""

from __future__ import annotations

import queue
from contextlib import contextmanager
from typing import Iterator

import torch
from loguru import logger

from rgbdforest.errors import ConfigurationError, RGBDForestError
from rgbdforest.forest.configuration import AccelerationMode, TrainingConfiguration


def resolve_device(
    device_id: int,
    on_gpu: bool,
    failure: type[RGBDForestError] = ConfigurationError,
) -> torch.device:
    """Map a device id to a torch device.

    Args:
        device_id: CUDA device index (ignored on CPU)
        on_gpu: Use the CUDA device instead of the CPU
        failure: Exception raised when the device cannot be used

    Raises:
        ConfigurationError: For a negative device id
        failure: When CUDA is missing or the id exceeds the device count
    """
    if device_id < 0:
        raise ConfigurationError(f"Invalid device id {device_id}")
    if not on_gpu:
        return torch.device("cpu")
    if not torch.cuda.is_available():
        raise failure(f"GPU device {device_id} requested but CUDA is not available")
    count = torch.cuda.device_count()
    if device_id >= count:
        raise failure(f"GPU device {device_id} not available ({count} devices present)")
    return torch.device(f"cuda:{device_id}")


class DevicePool:
    """Fixed set of device slots handed out for exclusive use.

    Each GPU device id is one slot; on the CPU the pool holds ``num_threads``
    slots of the same device. Concurrency of anything that acquires a slot is
    therefore bounded by the pool size.
    """

    def __init__(self, devices: list[torch.device]) -> None:
        if not devices:
            raise ConfigurationError("Device pool needs at least one device")
        self.devices = list(devices)
        self._slots: queue.Queue[torch.device] = queue.Queue()
        for device in self.devices:
            self._slots.put(device)

    @classmethod
    def for_training(
        cls,
        configuration: TrainingConfiguration,
        failure: type[RGBDForestError] = ConfigurationError,
    ) -> "DevicePool":
        if configuration.acceleration_mode == AccelerationMode.CPU_ONLY:
            devices = [torch.device("cpu")] * configuration.num_threads
        else:
            devices = [
                resolve_device(device_id, on_gpu=True, failure=failure)
                for device_id in configuration.device_ids
            ]
        logger.debug(f"Device pool: {[str(d) for d in devices]}")
        return cls(devices)

    @property
    def size(self) -> int:
        return len(self.devices)

    @contextmanager
    def acquire(self) -> Iterator[torch.device]:
        """Block until a slot is free and hold it for the ``with`` body."""
        device = self._slots.get()
        try:
            yield device
        finally:
            self._slots.put(device)
