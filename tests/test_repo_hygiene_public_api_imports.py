"""单测：约束跨包依赖边界只使用“稳定 Public API”。

动机：
- `packages/fiducial_pose` 作为独立几何库演进时，内部模块结构很可能重构；
  若 `tag_localizer` 直接 `from fiducial_pose.pnp import ...`，会导致非必要的耦合与脆弱性。

本测试只检查“生产代码”（packages/*/src），不检查仓库根 tests：
- 生产代码的 import 边界必须更严格；
- 单测可按需要使用内部模块（例如 `fiducial_pose.pnp.tag_object_points`）。
"""

from __future__ import annotations

import ast
from dataclasses import dataclass
from pathlib import Path

# 包名 -> 允许被其它包直接导入的子模块。
_ALLOWED_SUBMODULES: dict[str, set[str]] = {
    "fiducial_pose": set(),
    "tag_localizer": set(),
}


@dataclass(frozen=True, slots=True)
class _BadImport:
    file: str
    lineno: int
    module: str


def _iter_production_py_files(repo_root: Path) -> list[Path]:
    packages_dir = repo_root / "packages"
    if not packages_dir.exists():
        return []

    out: list[Path] = []
    for p in packages_dir.rglob("*.py"):
        if "__pycache__" in p.parts or "src" not in p.parts:
            continue
        out.append(p)
    return out


def _owner_package(rel_posix: str) -> str | None:
    # packages/<dist>/src/<pkg>/...
    parts = rel_posix.split("/")
    if len(parts) >= 4 and parts[0] == "packages" and parts[2] == "src":
        return parts[3]
    return None


def _violates(module: str, owner: str | None) -> bool:
    top, _, rest = module.partition(".")
    if top not in _ALLOWED_SUBMODULES or top == owner or not rest:
        return False
    return rest.split(".")[0] not in _ALLOWED_SUBMODULES[top]


def _check_import_boundary(*, repo_root: Path) -> list[_BadImport]:
    bad: list[_BadImport] = []

    for p in _iter_production_py_files(repo_root):
        rel = p.relative_to(repo_root).as_posix()
        owner = _owner_package(rel)

        try:
            tree = ast.parse(p.read_text(encoding="utf-8"), filename=rel)
        except SyntaxError as e:
            raise AssertionError(f"无法解析 Python 语法：{rel}:{e.lineno}:{e.offset}") from e

        for node in ast.walk(tree):
            if isinstance(node, ast.Import):
                for alias in node.names:
                    if _violates(alias.name, owner):
                        bad.append(_BadImport(rel, node.lineno, alias.name))
            elif isinstance(node, ast.ImportFrom):
                # 相对导入只在包内使用，不参与跨包边界约束。
                if node.level and node.level > 0:
                    continue
                if node.module and _violates(node.module, owner):
                    bad.append(_BadImport(rel, node.lineno, node.module))

    return bad


def test_production_code_imports_use_stable_public_api_only() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    bad = _check_import_boundary(repo_root=repo_root)

    assert bad == [], "发现生产代码跨包导入了内部模块路径（请改为从包顶层导入）：\n" + "\n".join(
        f"- {b.file}:{b.lineno} import {b.module}" for b in bad
    )


def test_public_api_exports_resolve() -> None:
    import fiducial_pose
    import tag_localizer

    for mod in (fiducial_pose, tag_localizer):
        missing = [name for name in mod.__all__ if not hasattr(mod, name)]
        assert missing == [], f"{mod.__name__}.__all__ 中有未导出的名字：{missing}"
