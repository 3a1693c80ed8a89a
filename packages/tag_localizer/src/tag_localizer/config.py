"""配置模型（dataclass）与 YAML/JSON 加载。

目标：
- 用 dataclass 表达定位进程所需的全部配置（相机、里程计噪声、估计器、输出、仿真）。
- 支持从 `.yaml/.yml/.json` 加载；未知字段直接报错，避免“拼写错了但静默无效”。

说明：
- 配置文件里的相对路径（tag 布局、标定文件、JSONL 输出）按配置文件所在目录解析。
- 本模块不触达传输层与估计器，只做解析与校验。
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal, Mapping, cast

import numpy as np
import yaml

from fiducial_pose import CameraIntrinsics, as_np_f64, load_camera_calibration

from .types import pose_from_mapping

DEFAULT_CONFIG_PATH = Path("configs/simulator.yaml")

_TRANSPORT_MODE = Literal["local", "simulator"]

_DEFAULT_ODOM_SIGMAS = (0.002, 0.002, 0.005, 0.01, 0.01, 0.01)
_DEFAULT_WINDOW_PRIOR_SIGMAS = (0.01, 0.01, 0.01, 0.02, 0.02, 0.02)
_DEFAULT_PRIOR_SIGMAS = (0.05, 0.05, 0.1, 0.25, 0.25, 0.05)


def _as_section(parent: Mapping[str, Any], key: str) -> dict[str, Any]:
    """把配置中的“段落”解析成 dict。

    约定：
        - 段落不存在或为 null -> 空 dict
        - 段落存在但不是对象 -> 报错
    """

    v = parent.get(key)
    if v is None:
        return {}
    if not isinstance(v, dict):
        raise RuntimeError(f"config section '{key}' must be an object")
    return cast(dict[str, Any], v)


def _reject_unknown(section: Mapping[str, Any], allowed: set[str], where: str) -> None:
    unknown = sorted(set(section.keys()) - allowed)
    if unknown:
        raise RuntimeError(f"{where} 出现未知字段：{unknown}")


def _load_mapping(path: Path) -> dict[str, Any]:
    path = Path(path)
    suf = path.suffix.lower()
    if not path.exists():
        raise RuntimeError(f"找不到配置文件: {path}")

    try:
        with path.open("r", encoding="utf-8") as f:
            if suf == ".json":
                data = json.load(f)
            elif suf in {".yaml", ".yml"}:
                data = yaml.safe_load(f)
            else:
                raise RuntimeError(f"不支持的配置文件类型: {path}（仅支持 .json/.yaml/.yml）")
    except (OSError, ValueError, yaml.YAMLError) as exc:
        raise RuntimeError(f"无法读取配置文件: {path}（{exc}）") from exc

    if not isinstance(data, dict):
        raise RuntimeError("配置文件顶层必须是对象（dict）")

    return data


def _resolve_path(x: Any, base_dir: Path) -> Path | None:
    if x is None:
        return None
    s = str(x).strip()
    if not s:
        return None
    p = Path(s).expanduser()
    if not p.is_absolute():
        p = base_dir / p
    return p


def _as_float(x: Any, default: float) -> float:
    if x is None:
        return float(default)
    return float(x)


def _as_int(x: Any, default: int) -> int:
    if x is None:
        return int(default)
    return int(x)


def _as_sigmas(x: Any, default: tuple[float, ...], where: str) -> np.ndarray:
    raw = default if x is None else x
    try:
        s = as_np_f64(raw, (6,))
    except ValueError as exc:
        raise RuntimeError(f"{where} 必须是 6 个数（rx,ry,rz,tx,ty,tz）") from exc
    if not np.all(np.isfinite(s)) or np.any(s <= 0):
        raise RuntimeError(f"{where} 必须全部为正数，实际为 {s.tolist()}")
    return s


@dataclass(frozen=True, slots=True)
class CameraConfig:
    """单相机配置。

    说明：
    - intrinsics 为 None 表示内参由协处理器在 camera_info 主题上发布。
    - T_robot_from_camera 为 camera->robot 安装位姿。
    """

    name: str
    intrinsics: CameraIntrinsics | None
    T_robot_from_camera: np.ndarray
    pixel_sigma: float = 1.0


@dataclass(frozen=True, slots=True)
class OdometryConfig:
    sigmas: np.ndarray = field(default_factory=lambda: np.asarray(_DEFAULT_ODOM_SIGMAS, dtype=np.float64))


@dataclass(frozen=True, slots=True)
class EstimatorConfig:
    """估计器参数。

    Attributes:
        max_iterations: 每次 optimize 的 LM 最大迭代次数。
        convergence_tol: LM 的相对 / 绝对误差下降阈值，低于该值即收敛。
        initial_lambda: LM 初始阻尼。
        max_nodes: 滑窗最大节点数；超出后把最老的节点边缘化为先验。
        max_tag_time_offset_us: 视觉观测与最近节点的最大时间差；超出则丢弃。
        window_prior_sigmas: 边缘化时加在新窗口首节点上的先验标准差。
        jacobian_eps: tag 重投影因子数值雅可比的扰动步长（沿 Pose3.retract）。
    """

    max_iterations: int = 10
    convergence_tol: float = 1e-6
    initial_lambda: float = 1e-3
    max_nodes: int = 60
    max_tag_time_offset_us: int = 100_000
    window_prior_sigmas: np.ndarray = field(
        default_factory=lambda: np.asarray(_DEFAULT_WINDOW_PRIOR_SIGMAS, dtype=np.float64)
    )
    jacobian_eps: float = 1e-6


@dataclass(frozen=True, slots=True)
class OutputConfig:
    """发布结果的本地 JSONL 记录（可选）。"""

    jsonl_path: Path | None = None
    flush_every_records: int = 1
    flush_interval_s: float = 0.0


@dataclass(frozen=True, slots=True)
class SimulatorConfig:
    """内置仿真器参数（transport.mode=simulator 时生效）。

    说明：
    - 里程计按 odom_batch_size 条一批发布，因此相机时间戳经常会“领先”于已到达的里程计，
      用来覆盖 backlog 路径。
    """

    seed: int = 0
    step_period_us: int = 20_000
    odom_batch_size: int = 5
    camera_every_steps: int = 2
    circle_radius_m: float = 1.5
    speed_mps: float = 0.5
    tag_count: int = 8
    tag_ring_radius_m: float = 4.0
    tag_height_m: float = 0.5
    tag_size_m: float = 0.1651
    odom_noise_sigmas: np.ndarray = field(
        default_factory=lambda: np.asarray((0.0005, 0.0005, 0.001, 0.002, 0.002, 0.0), dtype=np.float64)
    )
    pixel_noise_px: float = 0.5
    prior_sigmas: np.ndarray = field(default_factory=lambda: np.asarray(_DEFAULT_PRIOR_SIGMAS, dtype=np.float64))
    prior_offset_m: float = 0.1
    image_width: int = 1280
    image_height: int = 800


@dataclass(frozen=True, slots=True)
class LocalizerConfig:
    root_table: str
    log_level: str
    tick_period_s: float
    not_ready_backoff_s: float
    transport_mode: _TRANSPORT_MODE
    tag_layout_path: Path | None
    odometry: OdometryConfig
    cameras: tuple[CameraConfig, ...]
    estimator: EstimatorConfig
    output: OutputConfig
    simulator: SimulatorConfig
    source_path: Path | None = None

    def validate(self) -> None:
        if not str(self.root_table).strip():
            raise ValueError("root_table must not be empty")
        if self.tick_period_s < 0:
            raise ValueError("tick_period_s must be >= 0")
        if self.not_ready_backoff_s < 0:
            raise ValueError("not_ready_backoff_s must be >= 0")

        names = [c.name for c in self.cameras]
        if len(set(names)) != len(names):
            raise ValueError(f"camera names must be unique, got {names}")
        for c in self.cameras:
            if not c.name.strip() or "/" in c.name:
                raise ValueError(f"invalid camera name: {c.name!r}")
            if not (c.pixel_sigma > 0):
                raise ValueError(f"camera {c.name}: pixel_sigma must be > 0")

        e = self.estimator
        if e.max_iterations < 1:
            raise ValueError("estimator.max_iterations must be >= 1")
        if e.max_nodes < 2:
            raise ValueError("estimator.max_nodes must be >= 2")
        if e.max_tag_time_offset_us < 0:
            raise ValueError("estimator.max_tag_time_offset_us must be >= 0")
        if not (e.convergence_tol > 0 and e.initial_lambda > 0 and e.jacobian_eps > 0):
            raise ValueError("estimator.convergence_tol/initial_lambda/jacobian_eps must be > 0")

        if self.output.flush_every_records < 0:
            raise ValueError("output.flush_every_records must be >= 0")

        s = self.simulator
        if self.transport_mode == "simulator":
            if s.step_period_us <= 0 or s.odom_batch_size < 1 or s.camera_every_steps < 1:
                raise ValueError("simulator.step_period_us/odom_batch_size/camera_every_steps must be positive")
            if s.tag_count < 1 or s.tag_ring_radius_m <= s.circle_radius_m:
                raise ValueError("simulator.tag_ring_radius_m must exceed circle_radius_m and tag_count >= 1")


def _parse_camera(raw: Any, index: int, base_dir: Path) -> CameraConfig:
    where = f"cameras[{index}]"
    if not isinstance(raw, dict):
        raise RuntimeError(f"{where} must be an object")
    _reject_unknown(raw, {"name", "intrinsics", "calib_json", "robot_T_camera", "pixel_sigma"}, where)

    name = str(raw.get("name") or "").strip()
    if not name:
        raise RuntimeError(f"{where}.name is required")

    intr: CameraIntrinsics | None = None
    T_rc: np.ndarray | None = None

    calib_path = _resolve_path(raw.get("calib_json"), base_dir)
    if calib_path is not None:
        intr, T_rc = load_camera_calibration(calib_json_path=calib_path, camera=name)

    intr_raw = raw.get("intrinsics")
    if intr_raw is not None:
        if not isinstance(intr_raw, dict):
            raise RuntimeError(f"{where}.intrinsics must be an object")
        try:
            intr = CameraIntrinsics.from_mapping(intr_raw)
        except ValueError as exc:
            raise RuntimeError(f"{where}.intrinsics: {exc}") from exc

    mount_raw = raw.get("robot_T_camera")
    if mount_raw is not None:
        try:
            T_rc = pose_from_mapping(mount_raw)
        except ValueError as exc:
            raise RuntimeError(f"{where}.robot_T_camera: {exc}") from exc

    if T_rc is None:
        raise RuntimeError(f"{where}: robot_T_camera is required (inline or via calib_json)")

    return CameraConfig(
        name=name,
        intrinsics=intr,
        T_robot_from_camera=T_rc,
        pixel_sigma=_as_float(raw.get("pixel_sigma"), 1.0),
    )


def _parse_estimator(sec: Mapping[str, Any]) -> EstimatorConfig:
    d = EstimatorConfig()
    _reject_unknown(
        sec,
        {
            "max_iterations",
            "convergence_tol",
            "initial_lambda",
            "max_nodes",
            "max_tag_time_offset_us",
            "window_prior_sigmas",
            "jacobian_eps",
        },
        "estimator",
    )
    return EstimatorConfig(
        max_iterations=_as_int(sec.get("max_iterations"), d.max_iterations),
        convergence_tol=_as_float(sec.get("convergence_tol"), d.convergence_tol),
        initial_lambda=_as_float(sec.get("initial_lambda"), d.initial_lambda),
        max_nodes=_as_int(sec.get("max_nodes"), d.max_nodes),
        max_tag_time_offset_us=_as_int(sec.get("max_tag_time_offset_us"), d.max_tag_time_offset_us),
        window_prior_sigmas=_as_sigmas(
            sec.get("window_prior_sigmas"), _DEFAULT_WINDOW_PRIOR_SIGMAS, "estimator.window_prior_sigmas"
        ),
        jacobian_eps=_as_float(sec.get("jacobian_eps"), d.jacobian_eps),
    )


def _parse_simulator(sec: Mapping[str, Any]) -> SimulatorConfig:
    d = SimulatorConfig()
    _reject_unknown(
        sec,
        {
            "seed",
            "step_period_us",
            "odom_batch_size",
            "camera_every_steps",
            "circle_radius_m",
            "speed_mps",
            "tag_count",
            "tag_ring_radius_m",
            "tag_height_m",
            "tag_size_m",
            "odom_noise_sigmas",
            "pixel_noise_px",
            "prior_sigmas",
            "prior_offset_m",
            "image_width",
            "image_height",
        },
        "simulator",
    )

    odom_noise = sec.get("odom_noise_sigmas")
    if odom_noise is None:
        odom_noise_arr = d.odom_noise_sigmas
    else:
        odom_noise_arr = as_np_f64(odom_noise, (6,))
        if np.any(odom_noise_arr < 0):
            raise RuntimeError("simulator.odom_noise_sigmas must be >= 0")

    return SimulatorConfig(
        seed=_as_int(sec.get("seed"), d.seed),
        step_period_us=_as_int(sec.get("step_period_us"), d.step_period_us),
        odom_batch_size=_as_int(sec.get("odom_batch_size"), d.odom_batch_size),
        camera_every_steps=_as_int(sec.get("camera_every_steps"), d.camera_every_steps),
        circle_radius_m=_as_float(sec.get("circle_radius_m"), d.circle_radius_m),
        speed_mps=_as_float(sec.get("speed_mps"), d.speed_mps),
        tag_count=_as_int(sec.get("tag_count"), d.tag_count),
        tag_ring_radius_m=_as_float(sec.get("tag_ring_radius_m"), d.tag_ring_radius_m),
        tag_height_m=_as_float(sec.get("tag_height_m"), d.tag_height_m),
        tag_size_m=_as_float(sec.get("tag_size_m"), d.tag_size_m),
        odom_noise_sigmas=odom_noise_arr,
        pixel_noise_px=_as_float(sec.get("pixel_noise_px"), d.pixel_noise_px),
        prior_sigmas=_as_sigmas(sec.get("prior_sigmas"), _DEFAULT_PRIOR_SIGMAS, "simulator.prior_sigmas"),
        prior_offset_m=_as_float(sec.get("prior_offset_m"), d.prior_offset_m),
        image_width=_as_int(sec.get("image_width"), d.image_width),
        image_height=_as_int(sec.get("image_height"), d.image_height),
    )


def localizer_config_from_dict(data: Mapping[str, Any], *, base_dir: Path | None = None) -> LocalizerConfig:
    """从 dict（通常来自 YAML/JSON）构造 `LocalizerConfig`（不做 validate）。"""

    base = Path(base_dir) if base_dir is not None else Path.cwd()

    _reject_unknown(
        data,
        {
            "root_table",
            "log_level",
            "tick_period_s",
            "not_ready_backoff_s",
            "tag_layout_path",
            "transport",
            "odometry",
            "cameras",
            "estimator",
            "output",
            "simulator",
        },
        "config",
    )

    transport = _as_section(data, "transport")
    _reject_unknown(transport, {"mode"}, "transport")
    mode = str(transport.get("mode") or "local").strip().lower()
    if mode not in {"local", "simulator"}:
        raise RuntimeError(f"unknown transport.mode: {mode} (expected: local|simulator)")

    odom = _as_section(data, "odometry")
    _reject_unknown(odom, {"sigmas"}, "odometry")

    cams_raw = data.get("cameras") or []
    if not isinstance(cams_raw, list):
        raise RuntimeError("config 'cameras' must be a list")

    output = _as_section(data, "output")
    _reject_unknown(output, {"jsonl_path", "flush_every_records", "flush_interval_s"}, "output")

    return LocalizerConfig(
        root_table=str(data.get("root_table") or "localizer").strip(),
        log_level=str(data.get("log_level") or "INFO").strip().upper(),
        tick_period_s=_as_float(data.get("tick_period_s"), 0.01),
        not_ready_backoff_s=_as_float(data.get("not_ready_backoff_s"), 1.0),
        transport_mode=cast(_TRANSPORT_MODE, mode),
        tag_layout_path=_resolve_path(data.get("tag_layout_path"), base),
        odometry=OdometryConfig(sigmas=_as_sigmas(odom.get("sigmas"), _DEFAULT_ODOM_SIGMAS, "odometry.sigmas")),
        cameras=tuple(_parse_camera(c, i, base) for i, c in enumerate(cams_raw)),
        estimator=_parse_estimator(_as_section(data, "estimator")),
        output=OutputConfig(
            jsonl_path=_resolve_path(output.get("jsonl_path"), base),
            flush_every_records=_as_int(output.get("flush_every_records"), 1),
            flush_interval_s=_as_float(output.get("flush_interval_s"), 0.0),
        ),
        simulator=_parse_simulator(_as_section(data, "simulator")),
    )


def load_localizer_config(path: str | Path) -> LocalizerConfig:
    """从 YAML/JSON 文件加载并校验配置。

    Raises:
        RuntimeError: 文件不可读或结构不符合预期。
        ValueError: 数值范围校验失败。
    """

    p = Path(path).expanduser().resolve()
    data = _load_mapping(p)
    try:
        cfg = localizer_config_from_dict(data, base_dir=p.parent)
    except (TypeError, ValueError) as exc:
        raise RuntimeError(f"配置字段类型错误（{p}）：{exc}") from exc

    cfg = LocalizerConfig(
        root_table=cfg.root_table,
        log_level=cfg.log_level,
        tick_period_s=cfg.tick_period_s,
        not_ready_backoff_s=cfg.not_ready_backoff_s,
        transport_mode=cfg.transport_mode,
        tag_layout_path=cfg.tag_layout_path,
        odometry=cfg.odometry,
        cameras=cfg.cameras,
        estimator=cfg.estimator,
        output=cfg.output,
        simulator=cfg.simulator,
        source_path=p,
    )
    cfg.validate()
    return cfg
