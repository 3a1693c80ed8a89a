"""结果发布：把估计器快照写到 `<root>/output/*`。"""

from __future__ import annotations

import logging
from typing import Any, Protocol

import numpy as np

from fiducial_pose import quat_from_R, robot_pose_from_T

from .logging_utils import default_logger
from .transport import TelemetryTable, output_topic
from .types import LocalizerEstimate


class EstimateReader(Protocol):
    def estimate(self) -> LocalizerEstimate | None: ...


def estimate_to_record(est: LocalizerEstimate) -> dict[str, Any]:
    """LocalizerEstimate -> 可 JSON 序列化的 dict。"""

    T = np.asarray(est.T_world_from_robot, dtype=np.float64)
    pose = robot_pose_from_T(T)
    return {
        "timestamp_us": int(est.timestamp_us),
        "translation": [float(v) for v in T[:3, 3]],
        "quaternion": [float(v) for v in quat_from_R(T[:3, :3])],
        "yaw_rad": float(pose.yaw_rad),
        "covariance_diag": [float(v) for v in np.diag(est.covariance)],
        "node_count": int(est.node_count),
        "factor_count": int(est.factor_count),
        "iterations": int(est.iterations),
        "final_cost": float(est.final_cost),
    }


class DataPublisher:
    """只读估计器快照并发布；不修改估计器状态。"""

    def __init__(
        self,
        transport: TelemetryTable,
        estimator: EstimateReader,
        *,
        logger: logging.Logger | None = None,
    ) -> None:
        self._transport = transport
        self._estimator = estimator
        self._logger = logger or default_logger("publisher")
        self._published = 0

    @property
    def published_count(self) -> int:
        return int(self._published)

    def update(self) -> bool:
        """发布当前快照；估计器尚无解时返回 False。"""

        est = self._estimator.estimate()
        if est is None:
            self._logger.debug("publisher: no estimate yet")
            return False

        rec = estimate_to_record(est)
        root = self._transport.root
        self._transport.publish(output_topic(root, "pose"), rec)
        self._transport.publish(output_topic(root, "timestamp_us"), rec["timestamp_us"])
        self._transport.publish(output_topic(root, "yaw_rad"), rec["yaw_rad"])
        self._transport.publish(output_topic(root, "covariance_diag"), rec["covariance_diag"])
        self._transport.publish(
            output_topic(root, "solver"),
            {
                "node_count": rec["node_count"],
                "factor_count": rec["factor_count"],
                "iterations": rec["iterations"],
                "final_cost": rec["final_cost"],
            },
        )
        self._published += 1
        return True
