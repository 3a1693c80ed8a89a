"""pytest 运行期配置。

代码位于 `packages/*/src/`，由根目录 pyproject.toml 以 package-dir 方式安装
（例如 `pip install -e .[test]` 后再执行 `python -m pytest`）。

注意：请不要在测试侧把 `packages/*/src` 注入 sys.path。
一旦出现“源码目录 + 已安装包”双来源，`import tag_localizer` 等导入会产生歧义，
进而引入难以排查的不一致问题。
"""

from __future__ import annotations
