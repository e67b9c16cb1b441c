import os
import re
import shutil
import subprocess
import sys
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from nodeboxer.errors import BuildCommandFailed
from nodeboxer.log import log_info, log_run


DEBUG_BUILD_ENV = "NODEBOXER_DEBUG_BUILD"
DEFAULT_VS_VERSION = "vs2019"


def is_windows() -> bool:
    return sys.platform == "win32"


def normalize_path_env(env: Dict[str, str]) -> Dict[str, str]:
    """Collapse Path/path/PATH into a single PATH key.

    Node's Windows build breaks when the variable is spelled differently.
    """
    env = dict(env)
    path = None
    for key in ("PATH", "Path", "path"):
        value = env.pop(key, None)
        if path is None and value is not None:
            path = value
    if path is not None:
        env["PATH"] = path
    return env


def spawn_build_command(cmd: Sequence[str], cwd: Path, env: Optional[Dict[str, str]] = None, logger=None) -> None:
    cmd = [str(c) for c in cmd]
    if logger is not None:
        logger.step_starting(f"Running {' '.join(cmd)}")
    else:
        log_run(" ".join(cmd))
    env = dict(os.environ if env is None else env)
    if is_windows():
        env = normalize_path_env(env)
    # stdout/stderr are inherited, the toolchain output goes straight to the terminal
    result = subprocess.run(cmd, cwd=cwd, env=env, shell=False)
    if result.returncode != 0:
        raise BuildCommandFailed(cmd, result.returncode)
    if logger is not None:
        logger.step_completed()


def debug_build_requested(env: Dict[str, str]) -> bool:
    return env.get(DEBUG_BUILD_ENV, "") not in ("", "0", "false")


def posix_commands(linked_modules: Sequence[str], configure_args: Sequence[str],
                   make_args: Sequence[str], debug: bool = False, jobs: Optional[int] = None):
    configure: List[str] = ["./configure"]
    if debug:
        configure += ["--debug", "--v8-with-dchecks"]
    configure += list(configure_args)
    for module in linked_modules:
        configure.append(f"--link-module={module}")

    make: List[str] = ["make", *make_args]
    if not any(re.match(r"^-j", arg) for arg in make):
        make.append(f"-j{jobs or os.cpu_count() or 1}")
    if not any(re.match(r"^V=", arg) for arg in make):
        make.append("V=")
    return configure, make


def windows_command(linked_modules: Sequence[str], configure_args: Sequence[str],
                    make_args: Sequence[str], debug: bool = False) -> List[str]:
    args: List[str] = [*configure_args, *make_args]
    if debug and "debug" not in args:
        args.insert(0, "debug")
    if "debug" not in args and "release" not in args:
        args.append("release")
    if not any(re.match(r"^vs", arg) for arg in args):
        args.append(DEFAULT_VS_VERSION)
    for module in linked_modules:
        args += ["link-module", module]
    return [".\\vcbuild.bat", *args]


def compile_node(source_tree: Path, linked_modules: Sequence[str], configure_args: Sequence[str],
                 make_args: Sequence[str], env: Dict[str, str], logger) -> Path:
    logger.step_starting("Compiling Node.js from source")
    debug = debug_build_requested(env)

    if not is_windows():
        configure, make = posix_commands(linked_modules, configure_args, make_args, debug=debug)
        spawn_build_command(configure, cwd=source_tree, env=env, logger=logger)
        spawn_build_command(make, cwd=source_tree, env=env, logger=logger)
        return source_tree / "out" / ("Debug" if debug else "Release") / "node"

    cmd = windows_command(linked_modules, configure_args, make_args, debug=debug)
    flavor = "Debug" if "debug" in cmd else "Release"
    out_dir = source_tree / "out" / flavor
    # vcbuild does not notice all of our source tree edits
    if out_dir.exists():
        log_info(f"Removing stale build output {out_dir}")
        shutil.rmtree(out_dir)
    spawn_build_command(cmd, cwd=source_tree, env=env, logger=logger)
    return out_dir / "node.exe"
