#!/usr/bin/env python3
import os
import shutil
import sys
from pathlib import Path
from typing import Any, Dict, List, Tuple

from rich.panel import Panel
from rich.prompt import Confirm
from rich.table import Table

from nodeboxer.blobs import BlobPhase, build_with_blobs, select_blob_kind
from nodeboxer.build import compile_node
from nodeboxer.codegen import EntryPoint, js_regexp, render_bootstrap, render_main_source
from nodeboxer.config import (
    CompilationOptions,
    options_from_config,
    read_json,
    validate_source_file,
    with_env_args,
)
from nodeboxer.errors import NodeBoxerError
from nodeboxer.fetcher import acquire_source
from nodeboxer.log import LOG_COLOR, StepLogger, console, log_warn
from nodeboxer.patchers.addons import link_addon
from nodeboxer.patchers.gyp import append_dependencies
from nodeboxer.patchers.headers import patch_headers
from nodeboxer.versions import resolve_version


def die(msg: str) -> None:
    console.print(f"[{LOG_COLOR['error']}][FATAL][/]: {msg}")
    sys.exit(1)


# =========================
# SOURCE TREE PATCHING
# =========================
def link_addons(options: CompilationOptions, source_tree: Path, env: Dict[str, str], logger):
    require_mappings = []
    gyp_dependencies: List[str] = []
    register_functions: List[str] = []
    for addon in options.addons:
        for module in link_addon(addon, source_tree, env, logger):
            require_mappings.append((addon.require_regexp, module.linked_module_name))
            gyp_dependencies.append(module.target_name)
            register_functions.append(module.register_function)

    logger.step_starting("Finalizing linked addons processing")
    if gyp_dependencies:
        append_dependencies(source_tree / "node.gypi", gyp_dependencies)
    patch_headers(source_tree)
    logger.step_completed()
    return require_mappings, tuple(register_functions)


def insert_bootstrap(namespace: str, source_tree: Path, require_mappings, logger) -> List[str]:
    logger.step_starting("Inserting custom code into Node.js source")
    lib_dir = source_tree / "lib" / namespace
    lib_dir.mkdir(parents=True, exist_ok=True)
    (lib_dir / f"{namespace}.js").write_text(render_bootstrap(require_mappings), encoding="utf-8")
    logger.step_completed()
    # configure --link-module paths, the module id becomes `<namespace>/<namespace>`
    return [f"./lib/{namespace}/{namespace}.js"]


def copy_to_target(binary: Path, target: Path, logger) -> None:
    logger.step_starting(f"Moving resulting binary to {target}")
    target.parent.mkdir(parents=True, exist_ok=True)
    staging = target.with_name(target.name + ".partial")
    try:
        shutil.copy2(binary, staging)
        os.replace(staging, target)
    except OSError:
        staging.unlink(missing_ok=True)
        raise
    logger.step_completed()


# =========================
# PIPELINE
# =========================
def _compile(options: CompilationOptions, logger, session=None) -> None:
    validate_source_file(options.source_file)
    for addon in options.addons:
        js_regexp(addon.require_regexp)
    blob_kind = select_blob_kind(options.use_code_cache, options.use_node_snapshot)
    namespace = options.effective_namespace
    cache_dir = options.cache_dir
    env = options.build_env

    logger.step_starting(f"Looking for Node.js version matching {options.node_version_range!r}")
    release = resolve_version(options.node_version_range, session)
    source_tree = acquire_source(release, cache_dir, logger, session)

    require_mappings, register_functions = link_addons(options, source_tree, env, logger)
    linked_modules = insert_bootstrap(namespace, source_tree, require_mappings, logger)
    main_script = Path(options.source_file).read_text(encoding="utf-8")

    def build(phase: BlobPhase) -> Path:
        logger.step_starting("Handling main file source")
        entry = EntryPoint(
            entry_module=f"{namespace}/{namespace}",
            main_script=main_script,
            register_functions=register_functions,
            code_cache_mode=phase.code_cache_mode,
            snapshot_mode=phase.snapshot_mode,
            code_cache=phase.code_cache,
            snapshot=phase.snapshot,
            compress_blobs=options.compress_blobs,
        )
        (source_tree / "src" / "node_main.cc").write_text(render_main_source(entry), encoding="utf-8")
        logger.step_completed()

        if options.pre_compile_hook is not None:
            logger.step_starting("Running pre-compile hook")
            options.pre_compile_hook(source_tree)
            logger.step_completed()

        return compile_node(source_tree, linked_modules, options.configure_args,
                            options.make_args, env, logger)

    binary = build_with_blobs(blob_kind, build, source_tree, env, logger)
    copy_to_target(binary, Path(options.target_file), logger)

    if options.clean:
        logger.step_starting("Cleaning temporary directory")
        shutil.rmtree(cache_dir, ignore_errors=True)
        logger.step_completed()


def compile_js_file_as_binary(options: CompilationOptions, logger=None, session=None) -> None:
    logger = logger or StepLogger()
    options = with_env_args(options)
    try:
        _compile(options, logger, session)
    except Exception as err:
        logger.step_failed(err)
        raise


# =========================
# CLI
# =========================
def display_intro(options: CompilationOptions) -> None:
    console.rule("[bold green]nodeboxer Configuration Overview[/]")

    def add_table(title: str, rows: List[Tuple[str, Any]]) -> None:
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Option", style="cyan")
        table.add_column("Value", style="yellow")
        for k, v in rows:
            if isinstance(v, bool):
                val = "[green]True[/]" if v else "[red]False[/]"
            else:
                val = str(v)
            table.add_row(k, val)
        console.print(f"[bold underline]{title}[/]")
        console.print(table)

    add_table("General Options", [
        ("source", options.source_file),
        ("target", options.target_file),
        ("node_version", options.node_version_range),
        ("namespace", options.effective_namespace),
        ("cache_dir", options.cache_dir),
        ("clean", options.clean),
    ])
    add_table("Build", [
        ("configure_args", " ".join(options.configure_args) or "-"),
        ("make_args", " ".join(options.make_args) or "-"),
        ("use_code_cache", options.use_code_cache),
        ("use_node_snapshot", options.use_node_snapshot),
        ("compress_blobs", options.compress_blobs),
    ])
    if options.addons:
        add_table("Addons", [(str(a.path), a.require_regexp.pattern) for a in options.addons])


def main() -> None:
    if len(sys.argv) != 2:
        die("Usage: nodeboxer <config.json>")

    cfg_path = Path(sys.argv[1])
    try:
        options = options_from_config(read_json(cfg_path), cfg_path.resolve().parent)
        display_intro(with_env_args(options))
    except NodeBoxerError as e:
        die(str(e))

    if not sys.stdin.isatty():
        log_warn("stdin is not a terminal, skipping confirmation")
    elif not Confirm.ask("[?] Are these configuration options correct?", default=True):
        die("User aborted. Please update config and retry.")

    try:
        compile_js_file_as_binary(options)
    except NodeBoxerError as e:
        die(str(e))
    console.print(Panel(f"Binary written → {options.target_file}", style=LOG_COLOR["success"]))


if __name__ == "__main__":
    main()
