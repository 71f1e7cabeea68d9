import json
import logging
import re
from collections.abc import Iterable

from appbuilder.models import FileRecord, FileType, PackageFailure
from appbuilder.sandbox.backend import OutputCallback, SandboxSession
from appbuilder.sandbox.bootstrap import BASE_DEPENDENCIES, BASE_DEV_DEPENDENCIES


logger = logging.getLogger("appbuilder.apply.packages")


IMPORT_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"""^\s*import\s+[^'"]*?\s+from\s+['"]([^'"]+)['"]""", re.MULTILINE),
    re.compile(r"""^\s*import\s+['"]([^'"]+)['"]""", re.MULTILINE),
    re.compile(r"""^\s*export\s+[^'"]*?\s+from\s+['"]([^'"]+)['"]""", re.MULTILINE),
    re.compile(r"""\brequire\(\s*['"]([^'"]+)['"]\s*\)"""),
    re.compile(r"""\bimport\(\s*['"]([^'"]+)['"]\s*\)"""),
]

NODE_BUILTINS: frozenset[str] = frozenset(
    {
        "assert", "buffer", "child_process", "crypto", "events", "fs", "http",
        "https", "net", "os", "path", "process", "querystring", "readline",
        "stream", "string_decoder", "timers", "tty", "url", "util", "zlib",
    }
)

PREINSTALLED: frozenset[str] = frozenset(BASE_DEPENDENCIES) | frozenset(BASE_DEV_DEPENDENCIES)

_VALID_NAME = re.compile(r"^(@[a-z0-9][\w.-]*/)?[a-z0-9][\w.-]*$")


def package_name(specifier: str) -> str | None:
    """Normalise an import specifier to an installable package name.

    Relative, absolute, alias (`@/`, `~/`), URL and builtin specifiers yield None.
    Sub-paths are dropped: `lodash/debounce` -> `lodash`, `@scope/pkg/x` -> `@scope/pkg`.
    """
    spec = specifier.strip()
    if not spec or spec.startswith((".", "/", "@/", "~/", "#")) or ":" in spec:
        return None
    parts = spec.split("/")
    if spec.startswith("@"):
        if len(parts) < 2:
            return None
        name = "/".join(parts[:2])
    else:
        name = parts[0]
    if name in NODE_BUILTINS or not _VALID_NAME.match(name):
        return None
    return name


def _strip_version(requested: str) -> str:
    # "axios@1.6" -> "axios", "@scope/pkg@2" -> "@scope/pkg"
    requested = requested.strip()
    at = requested.find("@", 1)
    return requested[:at] if at > 0 else requested


def detect_packages(files: Iterable[FileRecord], queued: Iterable[str] = ()) -> list[str]:
    """Packages imported by script files plus explicitly queued ones, de-duplicated in order."""
    found: list[str] = []
    for f in files:
        if f.type != FileType.SCRIPT:
            continue
        for pattern in IMPORT_PATTERNS:
            for m in pattern.finditer(f.content):
                name = package_name(m.group(1))
                if name and name not in found:
                    found.append(name)
    for q in queued:
        name = package_name(_strip_version(q))
        if name and name not in found:
            found.append(name)
    return [p for p in found if p not in PREINSTALLED]


async def installed_packages(session: SandboxSession) -> set[str]:
    """Names declared in the sandbox package.json."""
    result = await session.run("cat package.json")
    if not result.ok:
        return set()
    try:
        data = json.loads(result.stdout)
    except json.JSONDecodeError:
        logger.warning("package.json in sandbox is not valid JSON")
        return set()
    names: set[str] = set()
    for key in ("dependencies", "devDependencies"):
        section = data.get(key) or {}
        if isinstance(section, dict):
            names.update(section)
    return names


def install_command(packages: list[str]) -> str:
    return "npm install --no-audit --no-fund --loglevel error " + " ".join(packages)


async def install_packages(
    session: SandboxSession,
    packages: list[str],
    on_output: OutputCallback | None = None,
) -> tuple[list[str], list[PackageFailure], list[str]]:
    """Install missing packages in one batch, falling back to one-by-one on failure.

    Returns (installed, failed, commands). Every requested package ends up in
    exactly one of the two lists.
    """
    commands: list[str] = []
    if not packages:
        return [], [], commands

    cmd = install_command(packages)
    commands.append(cmd)
    batch = await session.run(cmd, on_output)
    if batch.ok:
        return list(packages), [], commands

    logger.warning("batch install failed (exit %d), retrying per package", batch.exit_code)
    installed: list[str] = []
    failed: list[PackageFailure] = []
    for pkg in packages:
        single = install_command([pkg])
        commands.append(single)
        result = await session.run(single, on_output)
        if result.ok:
            installed.append(pkg)
        else:
            message = (result.stderr or result.stdout or "").strip()[-300:]
            failed.append(
                PackageFailure(
                    name=pkg,
                    message=message or f"npm install exited with code {result.exit_code}",
                )
            )
    return installed, failed, commands
