"""滑窗位姿图估计器（gtsam：里程计 + tag 重投影）。

模型：
- 节点：机器人位姿 T_world_from_robot（gtsam.Pose3，键 x<id>），按里程计时间戳建立；
  reset() 时建立首节点。
- 因子：
  - 先验：PriorFactorPose3；
  - 里程计：BetweenFactorPose3(exp(twist))；
  - tag：CustomFactor，4 个角点的重投影残差（OpenCV 投影，含畸变），
    雅可比按 Pose3.retract 做数值差分。
- 求解：LevenbergMarquardtOptimizer；协方差取 Marginals 中最新节点的 6x6 块
  （切空间顺序与 gtsam.Pose3 一致：旋转在前、平移在后）。
- 滑窗：节点数超过 max_nodes 时丢掉最老的节点，并在新的最老节点上按当前估计加先验。

注意：
- reset() 之前收到的里程计/视觉观测直接丢弃。
- 里程计 twist 是相对上一条样本的增量，只能接在链尾；不晚于链尾的样本计数并告警。
- 布局通过 `TagLayoutHolder` 按引用读取；布局更新后由调度器负责重新 reset。
- optimize() 失败时抛 `EstimationError`，估计器内部状态保持失败前的样子，供 print() 排查。
"""

from __future__ import annotations

import bisect
import logging
import math
from dataclasses import dataclass
from functools import partial
from typing import Any

import cv2
import gtsam
import numpy as np
from gtsam import symbol

from fiducial_pose import (
    CameraIntrinsics,
    TagLayoutHolder,
    compose_T,
    exp_se3,
    points_in_camera,
    project_points,
    robot_pose_from_T,
    to_pose3,
)

from .config import EstimatorConfig, OdometryConfig
from .logging_utils import default_logger
from .types import LocalizerEstimate, OdometrySample, VisionObservation

# gtsam 的 C++ 异常（IndeterminantLinearSystemException 等）在 Python 侧表现为 RuntimeError；
# CustomFactor 回调里的 numpy / OpenCV 错误会原样穿出。
_SOLVER_ERRORS = (RuntimeError, ValueError, np.linalg.LinAlgError, cv2.error)


class EstimationError(RuntimeError):
    """optimize() 无法给出有效解（无状态 / 奇异 / 数值发散）。"""


def _key(node_id: int) -> int:
    return symbol("x", int(node_id))


@dataclass(slots=True)
class _Node:
    node_id: int
    timestamp_us: int
    T: np.ndarray  # T_world_from_robot (4,4)，最近一次求解结果或初值


@dataclass(frozen=True, slots=True)
class _FactorRecord:
    kind: str
    node_ids: tuple[int, ...]
    factor: Any  # gtsam.NonlinearFactor
    label: str = ""


def _tag_residual(
    pose: gtsam.Pose3,
    *,
    corners_world: np.ndarray,
    corners_px: np.ndarray,
    intrinsics: CameraIntrinsics,
    T_robot_from_camera: np.ndarray,
) -> np.ndarray:
    T_world_from_cam = compose_T(np.asarray(pose.matrix(), dtype=np.float64), T_robot_from_camera)
    uv = project_points(points_world=corners_world, T_world_from_cam=T_world_from_cam, intr=intrinsics)
    return (uv - corners_px).reshape(-1)


def _tag_error(
    this: gtsam.CustomFactor,
    values: gtsam.Values,
    jacobians: list[np.ndarray] | None,
    *,
    residual: Any,
    eps: float,
) -> np.ndarray:
    pose = values.atPose3(this.keys()[0])
    r0 = residual(pose)
    if jacobians is not None:
        J = np.zeros((r0.size, 6), dtype=np.float64)
        for j in range(6):
            d = np.zeros(6, dtype=np.float64)
            d[j] = eps
            J[:, j] = (residual(pose.retract(d)) - r0) / eps
        jacobians[0] = J
    return r0


class Localizer:
    """tag 定位估计器。

    接口与调度器约定：
    - reset(T_world_from_robot, sigmas, timestamp_us)
    - add_odometry(sample) / add_tag_observation(obs)：只加因子，不求解
    - optimize()：求解；失败抛 EstimationError
    - print()：把内部状态完整打到日志
    - estimate()：最近一次 optimize 的只读快照
    """

    def __init__(
        self,
        *,
        layout: TagLayoutHolder,
        odometry: OdometryConfig | None = None,
        config: EstimatorConfig | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._layout = layout
        self._odom_noise = gtsam.noiseModel.Diagonal.Sigmas(
            np.asarray((odometry or OdometryConfig()).sigmas, dtype=np.float64).reshape(6)
        )
        self._cfg = config or EstimatorConfig()
        self._logger = logger or default_logger("estimator")

        self._nodes: list[_Node] = []
        self._factors: list[_FactorRecord] = []
        self._next_node_id = 0
        self._dirty = False
        self._estimate: LocalizerEstimate | None = None
        self._last_iterations = 0
        self._last_cost = float("nan")
        self._dropped_odometry = 0

    @property
    def initialized(self) -> bool:
        return bool(self._nodes)

    @property
    def node_count(self) -> int:
        return len(self._nodes)

    @property
    def factor_count(self) -> int:
        return len(self._factors)

    @property
    def dropped_odometry(self) -> int:
        """reset 之后因时间戳不晚于链尾而被丢弃的里程计条数。"""

        return self._dropped_odometry

    # ------------------------------------------------------------------
    # 建图
    # ------------------------------------------------------------------

    def reset(self, T_world_from_robot: np.ndarray, sigmas: np.ndarray, timestamp_us: int) -> None:
        """清空图并以给定位姿建立首节点 + 先验。"""

        T = np.asarray(T_world_from_robot, dtype=np.float64).reshape(4, 4)
        s = np.asarray(sigmas, dtype=np.float64).reshape(6)
        if not np.all(np.isfinite(T)) or not np.all(s > 0):
            raise ValueError("reset pose must be finite and sigmas positive")

        self._nodes = []
        self._factors = []
        self._estimate = None
        self._dropped_odometry = 0
        node = self._new_node(int(timestamp_us), T)
        self._add_prior(node, T, s)
        self._dirty = True

        pose = robot_pose_from_T(T)
        self._logger.info(
            "estimator reset at t=%d us: x=%.3f y=%.3f yaw=%.3f",
            int(timestamp_us),
            pose.x_m,
            pose.y_m,
            pose.yaw_rad,
        )

    def add_odometry(self, sample: OdometrySample) -> bool:
        """追加一条里程计因子；返回是否被采纳。"""

        if not self._nodes:
            self._logger.debug("drop odometry t=%d: estimator not reset yet", sample.timestamp_us)
            return False

        last = self._nodes[-1]
        ts = int(sample.timestamp_us)
        if ts <= last.timestamp_us:
            self._dropped_odometry += 1
            self._logger.warning(
                "drop odometry t=%d: not after latest node t=%d (dropped=%d)",
                ts,
                last.timestamp_us,
                self._dropped_odometry,
            )
            return False

        T_ab = exp_se3(sample.twist)
        node = self._new_node(ts, compose_T(last.T, T_ab))
        self._factors.append(
            _FactorRecord(
                kind="BetweenFactor",
                node_ids=(last.node_id, node.node_id),
                factor=gtsam.BetweenFactorPose3(
                    _key(last.node_id), _key(node.node_id), to_pose3(T_ab), self._odom_noise
                ),
            )
        )
        self._dirty = True
        self._enforce_window()
        return True

    def add_tag_observation(self, obs: VisionObservation) -> int:
        """把一帧 tag 观测挂到时间最近的节点上；返回新增因子数。"""

        if not self._nodes:
            self._logger.debug("drop vision t=%d cam=%s: estimator not reset yet", obs.timestamp_us, obs.camera)
            return 0

        layout = self._layout.current
        if layout is None:
            self._logger.debug("drop vision t=%d cam=%s: no tag layout", obs.timestamp_us, obs.camera)
            return 0

        node = self._nearest_node(int(obs.timestamp_us))
        offset = abs(int(obs.timestamp_us) - node.timestamp_us)
        if offset > int(self._cfg.max_tag_time_offset_us):
            self._logger.debug(
                "drop vision t=%d cam=%s: nearest node is %d us away", obs.timestamp_us, obs.camera, offset
            )
            return 0

        T_robot_from_camera = np.asarray(obs.T_robot_from_camera, dtype=np.float64).reshape(4, 4)
        T_world_from_cam = compose_T(node.T, T_robot_from_camera)
        noise = gtsam.noiseModel.Isotropic.Sigma(8, float(obs.pixel_sigma))
        added = 0
        for det in obs.tags:
            corners = layout.corners_world(det.tag_id)
            if corners is None:
                self._logger.debug("cam=%s: tag %d not in layout", obs.camera, det.tag_id)
                continue
            depth = points_in_camera(points_world=corners, T_world_from_cam=T_world_from_cam)[:, 2]
            if np.any(depth <= 0):
                self._logger.debug("cam=%s: tag %d behind camera at current estimate", obs.camera, det.tag_id)
                continue

            residual = partial(
                _tag_residual,
                corners_world=corners,
                corners_px=np.asarray(det.corners_px, dtype=np.float64).reshape(4, 2),
                intrinsics=obs.intrinsics,
                T_robot_from_camera=T_robot_from_camera,
            )
            factor = gtsam.CustomFactor(
                noise,
                [_key(node.node_id)],
                partial(_tag_error, residual=residual, eps=float(self._cfg.jacobian_eps)),
            )
            self._factors.append(
                _FactorRecord(
                    kind="TagFactor",
                    node_ids=(node.node_id,),
                    factor=factor,
                    label=f"cam={obs.camera} tag={int(det.tag_id)}",
                )
            )
            added += 1

        if added:
            self._dirty = True
        return added

    def _add_prior(self, node: _Node, T: np.ndarray, sigmas: np.ndarray, *, front: bool = False) -> None:
        record = _FactorRecord(
            kind="PriorFactor",
            node_ids=(node.node_id,),
            factor=gtsam.PriorFactorPose3(
                _key(node.node_id), to_pose3(T), gtsam.noiseModel.Diagonal.Sigmas(np.asarray(sigmas, dtype=np.float64))
            ),
        )
        if front:
            self._factors.insert(0, record)
        else:
            self._factors.append(record)

    def _new_node(self, timestamp_us: int, T: np.ndarray) -> _Node:
        node = _Node(node_id=self._next_node_id, timestamp_us=int(timestamp_us), T=np.array(T, dtype=np.float64))
        self._next_node_id += 1
        self._nodes.append(node)
        return node

    def _nearest_node(self, timestamp_us: int) -> _Node:
        stamps = [n.timestamp_us for n in self._nodes]
        i = bisect.bisect_left(stamps, timestamp_us)
        if i <= 0:
            return self._nodes[0]
        if i >= len(stamps):
            return self._nodes[-1]
        before, after = self._nodes[i - 1], self._nodes[i]
        if timestamp_us - before.timestamp_us <= after.timestamp_us - timestamp_us:
            return before
        return after

    def _enforce_window(self) -> None:
        excess = len(self._nodes) - int(self._cfg.max_nodes)
        if excess <= 0:
            return

        dropped = {n.node_id for n in self._nodes[:excess]}
        self._nodes = self._nodes[excess:]
        self._factors = [f for f in self._factors if not any(i in dropped for i in f.node_ids)]

        anchor = self._nodes[0]
        self._add_prior(anchor, anchor.T, np.asarray(self._cfg.window_prior_sigmas, dtype=np.float64), front=True)
        self._logger.debug("window: dropped %d node(s), anchor t=%d", excess, anchor.timestamp_us)

    # ------------------------------------------------------------------
    # 求解
    # ------------------------------------------------------------------

    def _graph_and_values(self) -> tuple[gtsam.NonlinearFactorGraph, gtsam.Values]:
        graph = gtsam.NonlinearFactorGraph()
        for rec in self._factors:
            graph.add(rec.factor)
        values = gtsam.Values()
        for node in self._nodes:
            values.insert(_key(node.node_id), to_pose3(node.T))
        return graph, values

    def _lm_params(self) -> gtsam.LevenbergMarquardtParams:
        params = gtsam.LevenbergMarquardtParams()
        params.setMaxIterations(int(self._cfg.max_iterations))
        params.setRelativeErrorTol(float(self._cfg.convergence_tol))
        params.setAbsoluteErrorTol(float(self._cfg.convergence_tol))
        params.setlambdaInitial(float(self._cfg.initial_lambda))
        return params

    def optimize(self) -> LocalizerEstimate:
        """LM 求解当前窗口，返回最新节点的估计。

        Raises:
            EstimationError: 尚未 reset、线性系统奇异或结果非有限。
        """

        if not self._nodes:
            raise EstimationError("optimize() called before reset(): no state to solve")

        if not self._dirty and self._estimate is not None:
            return self._estimate

        graph, initial = self._graph_and_values()
        latest = self._nodes[-1]

        try:
            initial_cost = float(graph.error(initial))
            if not math.isfinite(initial_cost):
                raise EstimationError(f"initial cost is not finite ({initial_cost})")

            optimizer = gtsam.LevenbergMarquardtOptimizer(graph, initial, self._lm_params())
            result = optimizer.optimize()
            iterations = int(optimizer.iterations())
            cost = float(graph.error(result))
            marginals = gtsam.Marginals(graph, result)
            cov = np.asarray(marginals.marginalCovariance(_key(latest.node_id)), dtype=np.float64)
        except EstimationError:
            raise
        except _SOLVER_ERRORS as exc:
            raise EstimationError(f"gtsam optimization failed: {exc}") from exc

        poses = [np.asarray(result.atPose3(_key(n.node_id)).matrix(), dtype=np.float64) for n in self._nodes]
        if not math.isfinite(cost) or not all(np.all(np.isfinite(T)) for T in poses):
            raise EstimationError("optimized poses are not finite")
        if cov.shape != (6, 6) or not np.all(np.isfinite(cov)):
            raise EstimationError("covariance is not finite")

        for node, T in zip(self._nodes, poses):
            node.T = T

        self._last_iterations = iterations
        self._last_cost = cost
        self._dirty = False

        self._estimate = LocalizerEstimate(
            timestamp_us=int(latest.timestamp_us),
            T_world_from_robot=latest.T.copy(),
            covariance=np.array(0.5 * (cov + cov.T), dtype=np.float64),
            node_count=len(self._nodes),
            factor_count=len(self._factors),
            iterations=iterations,
            final_cost=cost,
        )
        self._logger.debug(
            "optimize: nodes=%d factors=%d iters=%d cost=%.6g -> %.6g",
            len(self._nodes),
            len(self._factors),
            iterations,
            initial_cost,
            cost,
        )
        return self._estimate

    def estimate(self) -> LocalizerEstimate | None:
        """最近一次成功 optimize 的快照；reset 之后、optimize 之前为 None。"""

        return self._estimate

    # ------------------------------------------------------------------
    # 诊断
    # ------------------------------------------------------------------

    def print(self) -> None:
        """把节点、因子与残差完整打到 ERROR 日志（用于致命错误前的现场保留）。"""

        log = self._logger
        kinds: dict[str, int] = {}
        for f in self._factors:
            kinds[f.kind] = kinds.get(f.kind, 0) + 1

        layout = self._layout.current
        log.error(
            "estimator dump: nodes=%d factors=%d %s layout_tags=%s last_iters=%d last_cost=%s dropped_odom=%d",
            len(self._nodes),
            len(self._factors),
            kinds,
            None if layout is None else len(layout),
            self._last_iterations,
            self._last_cost,
            self._dropped_odometry,
        )
        for node in self._nodes:
            pose = robot_pose_from_T(node.T)
            log.error(
                "  node %d t=%d x=%.4f y=%.4f z=%.4f yaw=%.4f",
                node.node_id,
                node.timestamp_us,
                pose.x_m,
                pose.y_m,
                pose.z_m,
                pose.yaw_rad,
            )

        _, values = self._graph_and_values()
        for f in self._factors:
            extra = f" {f.label}" if f.label else ""
            try:
                err = float(f.factor.error(values))
            except _SOLVER_ERRORS as exc:
                log.error("  factor %s nodes=%s error unavailable: %s%s", f.kind, f.node_ids, exc, extra)
                continue
            log.error("  factor %s nodes=%s error=%.6g%s", f.kind, f.node_ids, err, extra)
