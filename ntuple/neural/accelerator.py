"""
Device engine: accelerator detection and kernel dispatch with a software fallback.

The engine probes jax for an accelerator in priority order (GPU > TPU). When none is found, when
it is disabled, or when anything goes wrong while probing, it silently switches to the numpy
software kernels. Both paths honour the same dispatch contract, so callers never need to know which
one is running; only throughput differs.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import jax
import numpy as np
from numpy import ndarray
from numpy.random import default_rng

from ntuple.exceptions import DeviceDisposedError
from ntuple.game.kernels import GAME_OVER, KERNEL_IDS, MOVE, JaxKernels, KernelSet, SoftwareKernels

logger = logging.getLogger(__name__)

FALLBACK_NAME = 'CPU (Fallback)'


class BackendType(str, Enum):
    """Available execution backends."""

    CPU = 'cpu'
    GPU = 'gpu'
    TPU = 'tpu'


@dataclass
class DeviceConfig:
    """
    Device engine settings.

    Attributes
    ----------
    enabled : bool
        Probe for an accelerator; when False the software kernels are used directly.
    batch_size : int
        Number of lanes per dispatch.
    debug : bool
        Log every dispatch with its duration and check float outputs for NaN.
    device_index : int | None
        Index of the accelerator to use; the first one when None.
    platforms : tuple[str, ...]
        jax platforms to probe, in priority order.
    """

    enabled: bool = True
    batch_size: int = 64
    debug: bool = False
    device_index: int | None = None
    platforms: tuple[str, ...] = ('gpu', 'tpu')


@dataclass
class DeviceInfo:
    """
    Information about the active execution device.

    Attributes
    ----------
    name : str
        Human-readable name of the device.
    is_gpu : bool
        Whether a real accelerator is active.
    max_work_group_size : int
        Largest number of lanes executed together in one kernel step.
    available_memory : int | None
        Device memory in MB, when the backend reports it.
    backend : str
        Backend tag (see ``BackendType``).
    """

    name: str
    is_gpu: bool
    max_work_group_size: int
    available_memory: int | None
    backend: str


@dataclass
class DeviceBuffer:
    """Handle on a named buffer allocated by the engine."""

    name: str
    shape: tuple[int, ...]
    dtype: str
    _engine: DeviceEngine = field(repr=False)

    def read(self) -> ndarray:
        """Copy the buffer back to the host."""
        return self._engine.read_buffer(self.name)


def _fallback_info(batch_size: int) -> DeviceInfo:
    return DeviceInfo(
        name=FALLBACK_NAME,
        is_gpu=False,
        max_work_group_size=batch_size,
        available_memory=None,
        backend=BackendType.CPU.value,
    )


class DeviceEngine:
    """
    Runs batch kernels on the best available device.

    Attributes
    ----------
    config : DeviceConfig
        Engine settings.
    info : DeviceInfo | None
        Active device, set by ``initialize``.
    kernels : KernelSet | None
        Active kernel implementation.

    Examples
    --------
    >>> engine = DeviceEngine()
    >>> info = engine.initialize()
    >>> afterstates, rewards, valid = engine.dispatch('move', boards, directions)
    """

    def __init__(self, config: DeviceConfig | None = None):
        self.config = config or DeviceConfig()
        self.info: DeviceInfo | None = None
        self.kernels: KernelSet | None = None
        self.lane_count = self.config.batch_size
        self._compiled: dict[str, Callable[..., Any]] = {}
        self._buffers: dict[str, Any] = {}
        self._disposed = False

    # ##>: Lifecycle.

    def initialize(self) -> DeviceInfo:
        """
        Detect the execution device.

        Never raises: any probe failure produces the software device instead.

        Returns
        -------
        DeviceInfo
            Description of the active device.
        """
        self._disposed = False
        self._compiled.clear()
        if not self.config.enabled:
            logger.info('Accelerator disabled, using software kernels')
            self.kernels, self.info = SoftwareKernels(), _fallback_info(self.lane_count)
            return self.info

        try:
            self.kernels, self.info = self._detect_accelerator()
        except Exception as error:
            logger.warning('Accelerator probe failed (%s), falling back to software kernels', error)
            self.kernels, self.info = SoftwareKernels(), _fallback_info(self.lane_count)

        logger.info('Device: %s (backend=%s)', self.info.name, self.info.backend)
        return self.info

    def _detect_accelerator(self) -> tuple[KernelSet, DeviceInfo]:
        """
        Find the first usable accelerator and smoke-test it.

        Returns
        -------
        tuple[KernelSet, DeviceInfo]
            jax kernels on the detected device, or the software kernels when none is found.
        """
        for platform in self.config.platforms:
            try:
                devices = jax.devices(platform)
            except RuntimeError as error:
                logger.debug('No %s device: %s', platform, error)
                continue
            if not devices:
                continue

            index = self.config.device_index or 0
            if index >= len(devices):
                logger.warning('Device index %d out of range (%d %s devices)', index, len(devices), platform)
                index = 0
            device = devices[index]

            kernels = JaxKernels(device)
            # ##>: A tiny move proves that compilation and execution work on this device.
            kernels.move(np.zeros((1, 16), dtype=np.float32), np.zeros(1, dtype=np.int32))

            return kernels, DeviceInfo(
                name=f'{device.device_kind} ({platform}:{device.id})',
                is_gpu=platform != BackendType.CPU.value,
                max_work_group_size=1024,
                available_memory=self._device_memory(device),
                backend=platform,
            )

        return SoftwareKernels(), _fallback_info(self.lane_count)

    @staticmethod
    def _device_memory(device: jax.Device) -> int | None:
        """Device memory in MB, if the runtime exposes it."""
        try:
            stats = device.memory_stats()
        except (RuntimeError, NotImplementedError, AttributeError):
            return None
        if not stats or 'bytes_limit' not in stats:
            return None
        return int(stats['bytes_limit'] / (1024 * 1024))

    def force_fallback(self, reason: str = 'requested') -> DeviceInfo:
        """
        Switch to the software kernels, migrating every allocated buffer.

        Buffers that cannot be read back from a lost device are dropped; their owners must
        re-upload them.
        """
        self._ensure_usable()
        logger.warning('Switching to software kernels: %s', reason)
        migrated: dict[str, ndarray] = {}
        for name, data in self._buffers.items():
            try:
                migrated[name] = self.kernels.to_host(data)
            except RuntimeError as error:
                logger.warning('Buffer %s lost during fallback: %s', name, error)

        self.kernels = SoftwareKernels()
        self.info = _fallback_info(self.lane_count)
        self._compiled.clear()
        self._buffers = {name: self.kernels.to_device(data) for name, data in migrated.items()}
        return self.info

    def dispose(self) -> None:
        """Release every buffer and compiled kernel; later calls raise ``DeviceDisposedError``."""
        self._buffers.clear()
        self._compiled.clear()
        self.kernels = None
        self._disposed = True
        logger.debug('Device engine disposed')

    @property
    def is_available(self) -> bool:
        """Whether the engine can dispatch kernels."""
        return self.kernels is not None and not self._disposed

    @property
    def is_gpu(self) -> bool:
        return self.info is not None and self.info.is_gpu and self.is_available

    def _ensure_usable(self) -> None:
        if self._disposed:
            raise DeviceDisposedError('Device engine has been disposed')
        if self.kernels is None:
            raise RuntimeError('Device engine not initialized. Call initialize() first.')

    # ##>: Kernels.

    def create_kernel(self, kernel_id: str) -> Callable[..., Any]:
        """
        Resolve and track a kernel of the active backend.

        Raises
        ------
        ValueError
            If ``kernel_id`` is not part of the kernel contract.
        """
        self._ensure_usable()
        if kernel_id not in KERNEL_IDS:
            raise ValueError(f'Unknown kernel: {kernel_id}')
        if kernel_id not in self._compiled:
            self._compiled[kernel_id] = getattr(self.kernels, kernel_id)
        return self._compiled[kernel_id]

    @property
    def kernel_count(self) -> int:
        """Number of kernels created on the active backend."""
        return len(self._compiled)

    def dispatch(self, kernel_id: str, *inputs: Any) -> Any:
        """
        Run a kernel on every lane and wait for the result.

        Parameters
        ----------
        kernel_id : str
            One of ``KERNEL_IDS``.
        *inputs
            Host arrays or ``DeviceBuffer`` handles.

        Returns
        -------
        Any
            Host numpy array(s) produced by the kernel.
        """
        kernel = self.create_kernel(kernel_id)
        arguments = [self._buffers[item.name] if isinstance(item, DeviceBuffer) else item for item in inputs]

        if not self.config.debug:
            return kernel(*arguments)

        start = time.perf_counter()
        outputs = kernel(*arguments)
        elapsed = (time.perf_counter() - start) * 1000
        logger.debug('Kernel %s on %s: %.3f ms', kernel_id, self.kernels.name, elapsed)
        for output in outputs if isinstance(outputs, tuple) else (outputs,):
            if np.issubdtype(output.dtype, np.floating) and not np.all(np.isfinite(output)):
                logger.warning('Kernel %s produced non-finite values', kernel_id)
        return outputs

    # ##>: Buffers.

    def allocate_buffer(self, name: str, data: ndarray) -> DeviceBuffer:
        """Copy ``data`` into a named device buffer, replacing any previous one."""
        self._ensure_usable()
        self._buffers[name] = self.kernels.to_device(data)
        return DeviceBuffer(name=name, shape=tuple(data.shape), dtype=str(data.dtype), _engine=self)

    def write_buffer(self, name: str, values: ndarray, indices: ndarray | None = None) -> None:
        """
        Update a named buffer.

        Parameters
        ----------
        name : str
            Buffer name.
        values : ndarray
            New content, or the values to write at ``indices``.
        indices : ndarray, optional
            Flat positions to overwrite; the whole buffer is replaced when omitted.
        """
        self._ensure_usable()
        if indices is None:
            self._buffers[name] = self.kernels.to_device(values)
        else:
            self._buffers[name] = self.kernels.scatter(self._buffers[name], indices, values)

    def read_buffer(self, name: str) -> ndarray:
        """Copy a named buffer back to the host."""
        self._ensure_usable()
        return self.kernels.to_host(self._buffers[name])

    def free_buffer(self, name: str) -> None:
        """Release a named buffer if it exists."""
        self._buffers.pop(name, None)

    @property
    def buffer_names(self) -> list[str]:
        return sorted(self._buffers)

    def update_lane_count(self, lane_count: int) -> None:
        """
        Change the number of lanes per dispatch.

        Raises
        ------
        ValueError
            If ``lane_count`` is below 1.
        """
        if lane_count < 1:
            raise ValueError(f'Lane count must be at least 1, got {lane_count}')
        self.lane_count = lane_count
        if self.info is not None and not self.info.is_gpu:
            self.info.max_work_group_size = lane_count

    update_batch_size = update_lane_count

    def run_benchmark(self, iterations: int = 10) -> dict[str, float]:
        """
        Time the move and terminal kernels on random boards.

        Parameters
        ----------
        iterations : int
            Timed repetitions, after one warm-up call.

        Returns
        -------
        dict[str, float]
            Mean milliseconds per dispatch and lanes per second.
        """
        self._ensure_usable()
        rng = default_rng(0)
        boards = rng.integers(0, 12, size=(self.lane_count, 16)).astype(np.float32)
        directions = rng.integers(0, 4, size=self.lane_count).astype(np.int32)

        self.dispatch(MOVE, boards, directions)
        start = time.perf_counter()
        for _ in range(iterations):
            self.dispatch(MOVE, boards, directions)
            self.dispatch(GAME_OVER, boards)
        elapsed = time.perf_counter() - start

        mean_ms = elapsed * 1000 / max(iterations, 1)
        return {
            'mean_dispatch_ms': mean_ms,
            'lanes_per_second': self.lane_count * iterations / elapsed if elapsed > 0 else float('inf'),
            'lane_count': float(self.lane_count),
            'is_gpu': float(self.is_gpu),
        }


def create_device_engine(config: DeviceConfig | None = None) -> DeviceEngine:
    """
    Build and initialise a device engine.

    Returns
    -------
    DeviceEngine
        An engine ready to dispatch kernels.
    """
    engine = DeviceEngine(config)
    engine.initialize()
    return engine
