from __future__ import annotations

import re

_IDENT = r"[0-9A-Za-z-]+"
_SEMVER = (
    r"(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)"
    rf"(?:-({_IDENT}(?:\.{_IDENT})*))?"
    rf"(?:\+({_IDENT}(?:\.{_IDENT})*))?"
)
SEMVER_PATTERN = _SEMVER
_SEMVER_RE = re.compile(rf"^{_SEMVER}$")
_CRATE_NAME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_-]{0,63}$")
_COMPARATOR_RE = re.compile(
    r"^(\^|~|=|>=|<=|>|<)?\s*(\d+|[*xX])(?:\.(\d+|[*xX]))?(?:\.(\d+|[*xX]))?(?:-([0-9A-Za-z.-]+))?(?:\+[0-9A-Za-z.-]+)?$"
)

VersionKey = tuple[int, int, int, tuple[tuple[int, int | str], ...]]


def is_valid_version(version: str) -> bool:
    return _SEMVER_RE.match(version) is not None


def is_valid_crate_name(name: str) -> bool:
    return _CRATE_NAME_RE.match(name) is not None


def version_key(version: str) -> VersionKey:
    """
    语义化版本的排序 key。

    - 预发布版本排在对应正式版之前（`1.0.0-beta < 1.0.0`）
    - 预发布标识：数字按数值比较，且数字标识小于字母标识
    - build metadata 不参与排序
    """
    match = _SEMVER_RE.match(version)
    if match is None:
        raise ValueError(f"Invalid semantic version: {version}")
    major, minor, patch, pre, _build = match.groups()
    if pre is None:
        # 正式版：用一个比任何预发布标识都大的哨兵
        pre_key: tuple[tuple[int, int | str], ...] = ((2, 0),)
    else:
        pre_key = tuple((0, int(part)) if part.isdigit() else (1, part) for part in pre.split("."))
    return int(major), int(minor), int(patch), pre_key


def newest(versions: list[str]) -> str | None:
    valid = [v for v in versions if is_valid_version(v)]
    if not valid:
        return None
    return max(valid, key=version_key)


def satisfies(version: str, requirement: str) -> bool:
    """
    判断 `version` 是否满足 Cargo 风格的版本约束。

    支持：`*`、`1.*`、`^1.2`、`~1.2.3`、`=1.2.3`、`>=1, <2`（逗号分隔取交集）；
    裸版本号按 caret 处理（Cargo 默认语义）。无法识别的约束一律视为不满足。
    """
    if not is_valid_version(version):
        return False
    requirement = requirement.strip()
    if requirement in {"", "*"}:
        return "-" not in version.split("+")[0]

    key = version_key(version)
    is_prerelease = key[3] != ((2, 0),)
    prerelease_allowed = False
    for raw in requirement.split(","):
        comparator = _parse_comparator(raw.strip())
        if comparator is None:
            return False
        op, parts, pre = comparator
        if pre is not None and len(parts) == 3 and tuple(parts) == key[:3]:
            prerelease_allowed = True
        if not _check(op, parts, pre, key):
            return False
    if is_prerelease and not prerelease_allowed:
        return False
    return True


def _parse_comparator(text: str) -> tuple[str, list[int], str | None] | None:
    match = _COMPARATOR_RE.match(text)
    if match is None:
        return None
    op, major, minor, patch, pre = match.groups()
    parts: list[int] = []
    wildcard = False
    for part in (major, minor, patch):
        if part is None:
            break
        if part in {"*", "x", "X"}:
            wildcard = True
            break
        parts.append(int(part))
    if wildcard and op not in (None, "^", "~", "="):
        return None
    if wildcard:
        # `1.*` 等价于 `1`，`1.2.*` 等价于 `~1.2`
        op = "~" if len(parts) == 2 else "="
    if op is None:
        op = "^"
    return op, parts, pre


def _check(op: str, parts: list[int], pre: str | None, key: VersionKey) -> bool:
    if not parts:
        return True
    lower = _bound(parts, pre)
    if op == "=":
        if len(parts) == 3:
            return key == lower
        return lower <= key < _upper_exact(parts)
    if op == ">":
        if len(parts) == 3:
            return key > lower
        return key >= _upper_exact(parts)
    if op == ">=":
        return key >= lower
    if op == "<":
        return key < lower
    if op == "<=":
        if len(parts) == 3:
            return key <= lower
        return key < _upper_exact(parts)
    if op == "~":
        if len(parts) == 1:
            upper = _bound([parts[0] + 1, 0, 0], "0")
        else:
            upper = _bound([parts[0], parts[1] + 1, 0], "0")
        return lower <= key < upper
    # caret
    return lower <= key < _caret_upper(parts)


def _bound(parts: list[int], pre: str | None) -> VersionKey:
    major, minor, patch = (parts + [0, 0, 0])[:3]
    if pre is None:
        pre_key: tuple[tuple[int, int | str], ...] = ((2, 0),)
    else:
        pre_key = tuple((0, int(p)) if p.isdigit() else (1, p) for p in pre.split("."))
    return major, minor, patch, pre_key


def _upper_exact(parts: list[int]) -> VersionKey:
    if len(parts) == 1:
        return _bound([parts[0] + 1, 0, 0], "0")
    return _bound([parts[0], parts[1] + 1, 0], "0")


def _caret_upper(parts: list[int]) -> VersionKey:
    major = parts[0]
    if major > 0 or len(parts) == 1:
        return _bound([major + 1, 0, 0], "0")
    minor = parts[1]
    if minor > 0 or len(parts) == 2:
        return _bound([0, minor + 1, 0], "0")
    return _bound([0, 0, parts[2] + 1], "0")


def newest_satisfying(versions: list[str], requirement: str) -> str | None:
    matching = [v for v in versions if satisfies(v, requirement)]
    if not matching:
        return None
    return max(matching, key=version_key)
