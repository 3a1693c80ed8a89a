"""tag_localizer：里程计 + 多相机 AprilTag 观测的实时融合定位。

说明：
- 对外 API 从包顶层暴露；调度核心在 `tag_localizer.scheduler`。
"""

from tag_localizer.config import LocalizerConfig, load_localizer_config
from tag_localizer.estimator import EstimationError, Localizer
from tag_localizer.publisher import DataPublisher
from tag_localizer.runtime import LocalizerRuntime, build_runtime, run_localizer, run_loop
from tag_localizer.scheduler import ObservationBacklog, UpdateScheduler
from tag_localizer.sim import SimulatorThread, TagSimulator
from tag_localizer.sources import CameraSource, ConfigSource, OdometrySource
from tag_localizer.transport import TelemetryTable
from tag_localizer.types import LocalizerEstimate, OdometrySample, PosePrior, TickReport, VisionObservation

__all__ = [
    "CameraSource",
    "ConfigSource",
    "DataPublisher",
    "EstimationError",
    "Localizer",
    "LocalizerConfig",
    "LocalizerEstimate",
    "LocalizerRuntime",
    "ObservationBacklog",
    "OdometrySample",
    "OdometrySource",
    "PosePrior",
    "SimulatorThread",
    "TagSimulator",
    "TelemetryTable",
    "TickReport",
    "UpdateScheduler",
    "VisionObservation",
    "build_runtime",
    "load_localizer_config",
    "run_localizer",
    "run_loop",
]
