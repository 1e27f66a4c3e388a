from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import textwrap
from dataclasses import asdict
from pathlib import Path
from typing import Any

from ._version import __version__
from .agents import resolve_agent_dir, supported_agents
from .config import DEFAULT_MANIFEST_PATH, Config, apply_env, config_path, load_config, manifest_path, save_config
from .context import Context
from .errors import InvalidInputError, SkillsPkgError, is_network_error, iter_causes
from .git_source import GitSource
from .goproxy import GoModuleSource
from .hashing import DirHashService
from .log import setup_logging
from .manager import SkillManager
from .manifest import ManifestStore, Skill
from .sources import LATEST, SourceKind, SourceRegistry
from .verify import HashVerifier

DEFAULT_INSTALL_DIR = ".skills"


def _merge_cfg(base: Config, args: argparse.Namespace) -> Config:
    # Env overrides config; CLI overrides both.
    cfg = apply_env(base)
    return Config(
        goproxy=getattr(args, "goproxy", None) or cfg.goproxy,
        temp_dir=getattr(args, "temp_dir", None) or cfg.temp_dir,
        http_timeout_s=cfg.http_timeout_s,
        max_workers=getattr(args, "max_workers", None) or cfg.max_workers,
        go_mod_path=cfg.go_mod_path,
    )


def _print_table(rows: list[list[str]]) -> None:
    if not rows:
        return
    widths = [0] * len(rows[0])
    for r in rows:
        for i, c in enumerate(r):
            widths[i] = max(widths[i], len(c))
    for r in rows:
        line = "  ".join(c.ljust(widths[i]) for i, c in enumerate(r))
        print(line.rstrip())


def _store(args: argparse.Namespace) -> ManifestStore:
    return ManifestStore(manifest_path(getattr(args, "config", None)))


def _context(args: argparse.Namespace) -> Context:
    return Context(timeout_s=getattr(args, "timeout_s", None))


def _make_registry(cfg: Config) -> SourceRegistry:
    return SourceRegistry(
        [
            GitSource(temp_dir=cfg.temp_dir),
            GoModuleSource(
                goproxy=cfg.goproxy,
                timeout_s=cfg.http_timeout_s,
                temp_dir=cfg.temp_dir,
                go_mod_path=cfg.go_mod_path,
            ),
        ]
    )


def _make_manager(args: argparse.Namespace, registry: SourceRegistry, cfg: Config) -> SkillManager:
    return SkillManager(_store(args), DirHashService(), registry, max_workers=cfg.max_workers)


def _targets_from_args(args: argparse.Namespace) -> list[str]:
    targets = [str(p) for p in (getattr(args, "install_dir", None) or [])]
    for agent in getattr(args, "agent", None) or []:
        targets.append(resolve_agent_dir(agent, global_=bool(getattr(args, "global_", False))))
    return targets


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="skills-pkg",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Package manager for agent skills.",
        epilog=textwrap.dedent(
            """\
            Environment variables:
              GOPROXY, SKILLSPKG_MANIFEST, SKILLSPKG_TEMP_DIR, SKILLSPKG_HTTP_TIMEOUT_S,
              SKILLSPKG_CONFIG_PATH, GIT_TOKEN / GITHUB_TOKEN (private git sources)
            """
        ),
    )

    def _add_runtime_overrides(parser: argparse.ArgumentParser, *, top: bool) -> None:
        # Accepted both before and after the subcommand:
        #   skills-pkg -v install
        #   skills-pkg install -v
        default = None if top else argparse.SUPPRESS
        parser.add_argument("--config", default=default, help=f"Manifest path (default: {DEFAULT_MANIFEST_PATH})")
        parser.add_argument("--goproxy", default=default, help="Module proxy chain (GOPROXY syntax)")
        parser.add_argument("--temp-dir", default=default, help="Staging directory for downloads")
        parser.add_argument("--max-workers", type=int, default=default, help="Maximum parallel workers")
        parser.add_argument("--timeout-s", type=float, default=default, help="Overall deadline in seconds")
        parser.add_argument("-v", "--verbose", action="store_true", default=False if top else argparse.SUPPRESS)
        parser.add_argument(
            "--verbose-errors",
            action="store_true",
            default=False if top else argparse.SUPPRESS,
            help="Print the full cause chain on errors",
        )

    _add_runtime_overrides(p, top=True)
    p.add_argument("--version", action="version", version=f"skills-pkg {__version__}")

    sub = p.add_subparsers(dest="cmd", required=True)

    def _sub(name: str, **kwargs: Any) -> argparse.ArgumentParser:
        sp = sub.add_parser(name, **kwargs)
        _add_runtime_overrides(sp, top=False)
        return sp

    agents_help = f"Agent name ({', '.join(supported_agents())})"

    # init
    init = _sub("init", help="Create the manifest")
    init.add_argument("-d", "--install-dir", action="append", help=f"Install target (repeatable; default {DEFAULT_INSTALL_DIR})")
    init.add_argument("-a", "--agent", action="append", help=agents_help)
    init.add_argument("-g", "--global", dest="global_", action="store_true", help="Use the agent's user-level directory")

    # add
    add = _sub("add", help="Add a skill and install it")
    add.add_argument("name")
    add.add_argument("--url", required=True, help="Repository URL or module path")
    add.add_argument("--source", default=SourceKind.GIT.value, choices=SourceKind.values())
    add.add_argument("--version", default=LATEST, help="Tag, branch, commit or module version (default: latest)")
    add.add_argument("--subdir", help="Directory inside the source that holds the skill (default: skills/<name>)")

    # add-target
    add_target = _sub("add-target", help="Add install targets")
    add_target.add_argument("install_dir", nargs="*")
    add_target.add_argument("-a", "--agent", action="append", help=agents_help)
    add_target.add_argument("-g", "--global", dest="global_", action="store_true")

    # install
    inst = _sub("install", aliases=["i"], help="Install skills from the manifest")
    inst.add_argument("name", nargs="?", help="Install only this skill")
    inst.add_argument("--json", action="store_true")

    # update
    upd = _sub("update", help="Update skills to their latest version")
    upd.add_argument("names", nargs="*")
    upd.add_argument("--dry-run", action="store_true", help="Only report available updates")
    upd.add_argument("--output", choices=["text", "json"], default="text")
    upd.add_argument("--patch", action="store_true", help="Print line diffs of modified files")

    # uninstall
    un = _sub("uninstall", aliases=["remove", "rm"], help="Remove a skill")
    un.add_argument("name")

    # verify
    ver = _sub("verify", help="Verify installed skills against recorded hashes")
    ver.add_argument("--json", action="store_true")

    # list
    ls = _sub("list", aliases=["ls"], help="List configured skills")
    ls.add_argument("--json", action="store_true")

    # config
    cfg = _sub("config", help="Manage user config")
    cfg_sub = cfg.add_subparsers(dest="subcmd", required=True)
    cfg_sub.add_parser("path", help="Print config path")
    cfg_sub.add_parser("show", help="Show config")
    cfg_set = cfg_sub.add_parser("set", help="Set config fields")
    cfg_set.add_argument("--goproxy")
    cfg_set.add_argument("--temp-dir")
    cfg_set.add_argument("--http-timeout-s", type=float)
    cfg_set.add_argument("--max-workers", type=int)
    cfg_set.add_argument("--go-mod-path")

    return p


def cmd_config(args: argparse.Namespace) -> int:
    if args.subcmd == "path":
        print(str(config_path()))
        return 0

    if args.subcmd == "show":
        print(json.dumps(load_config().__dict__, indent=2, sort_keys=True))
        return 0

    if args.subcmd == "set":
        cfg = load_config()
        new_cfg = Config(
            goproxy=args.goproxy if args.goproxy is not None else cfg.goproxy,
            temp_dir=args.temp_dir if args.temp_dir is not None else cfg.temp_dir,
            http_timeout_s=args.http_timeout_s if args.http_timeout_s is not None else cfg.http_timeout_s,
            max_workers=args.max_workers if args.max_workers is not None else cfg.max_workers,
            go_mod_path=args.go_mod_path if args.go_mod_path is not None else cfg.go_mod_path,
        )
        path = save_config(new_cfg)
        print(f"Saved: {path}")
        return 0

    raise AssertionError("unreachable")


def cmd_init(args: argparse.Namespace) -> int:
    store = _store(args)
    targets = _targets_from_args(args) or [DEFAULT_INSTALL_DIR]
    store.initialize(targets)
    print(f"Created {store.path}")
    for t in targets:
        print(f"install target: {t}")
    return 0


def cmd_add_target(args: argparse.Namespace) -> int:
    store = _store(args)
    targets = _targets_from_args(args)
    if not targets:
        raise InvalidInputError("Specify at least one install directory or --agent.")
    manifest = store.load()
    for t in targets:
        manifest.add_install_target(t)
    store.save(manifest)
    for t in targets:
        print(f"added install target: {t}")
    return 0


def cmd_add(args: argparse.Namespace) -> int:
    cfg = _merge_cfg(load_config(), args)
    skill = Skill(
        name=args.name.strip(),
        source=args.source,
        url=args.url.strip(),
        version=args.version,
        subdir=args.subdir if args.subdir is not None else f"skills/{args.name.strip()}",
    )
    with _make_registry(cfg) as registry:
        manager = _make_manager(args, registry, cfg)
        outcome = manager.add(_context(args), skill)

    print(f"Added {outcome.skill_name} {outcome.version or '(external lock)'}")
    for t in outcome.targets:
        print(f"installed: {Path(t) / outcome.skill_name}")
    for w in outcome.warnings:
        print(f"warning: {w}")
    return 0


def cmd_install(args: argparse.Namespace) -> int:
    cfg = _merge_cfg(load_config(), args)
    with _make_registry(cfg) as registry:
        manager = _make_manager(args, registry, cfg)
        outcomes = manager.install(_context(args), args.name)

    if args.json:
        payload = [
            {
                "skill_name": o.skill_name,
                "version": o.version,
                "hash_value": o.hash_value,
                "targets": list(o.targets),
                "warnings": list(o.warnings),
            }
            for o in outcomes
        ]
        print(json.dumps({"installed": payload}, indent=2, sort_keys=True))
        return 0

    if not outcomes:
        print("No skills to install.")
        return 0
    rows = [["NAME", "VERSION", "TARGETS"]]
    for o in outcomes:
        rows.append([o.skill_name, o.version or "(external lock)", str(len(o.targets))])
    _print_table(rows)
    for o in outcomes:
        for w in o.warnings:
            print(f"warning: {w}")
    return 0


_DIFF_MARKS = {"added": "+", "removed": "-", "modified": "~"}


def cmd_update(args: argparse.Namespace) -> int:
    cfg = _merge_cfg(load_config(), args)
    with _make_registry(cfg) as registry:
        manager = _make_manager(args, registry, cfg)
        results = manager.update(_context(args), args.names or None, dry_run=args.dry_run)

    if args.output == "json":
        payload = {"dry_run": bool(args.dry_run), "updates": [r.to_dict() for r in results]}
        print(json.dumps(payload, indent=2))
        return 0

    if not results:
        print("No skills to update.")
        return 0

    pending = 0
    for r in results:
        if r.has_update:
            pending += 1
            print(f"{r.skill_name}: {r.old_version or '(none)'} -> {r.new_version}")
        else:
            print(f"{r.skill_name}: up to date ({r.new_version})")
        for d in r.file_diffs:
            print(f"  {_DIFF_MARKS[d.status.value]} {d.path}")
            if args.patch and d.patch:
                print(textwrap.indent(d.patch.rstrip("\n"), "      "))

    if args.dry_run:
        print(f"{pending} update(s) available. Run without --dry-run to apply.")
    else:
        print(f"Updated {pending} skill(s).")
    return 0


def cmd_uninstall(args: argparse.Namespace) -> int:
    cfg = _merge_cfg(load_config(), args)
    with _make_registry(cfg) as registry:
        manager = _make_manager(args, registry, cfg)
        manager.uninstall(_context(args), args.name)
    print(f"Uninstalled {args.name}")
    return 0


def cmd_verify(args: argparse.Namespace) -> int:
    verifier = HashVerifier(_store(args), DirHashService())
    summary = verifier.verify_all(_context(args))

    if args.json:
        payload = {
            "total_skills": summary.total_skills,
            "success_count": summary.success_count,
            "failure_count": summary.failure_count,
            "results": [asdict(r) for r in summary.results],
        }
        print(json.dumps(payload, indent=2, sort_keys=True))
        return 1 if summary.failure_count else 0

    rows = [["NAME", "INSTALL_DIR", "STATUS"]]
    for r in summary.results:
        rows.append([r.skill_name, r.install_dir, "ok" if r.match else "MISMATCH"])
    if summary.results:
        _print_table(rows)
    print(
        f"Verified {summary.total_skills} installation(s): "
        f"{summary.success_count} ok, {summary.failure_count} failed"
    )
    return 1 if summary.failure_count else 0


def cmd_list(args: argparse.Namespace) -> int:
    manifest = _store(args).load()
    if args.json:
        payload = {
            "install_targets": list(manifest.install_targets),
            "skills": [dict(s.to_dict(), integrity=s.integrity.value) for s in manifest.skills],
        }
        print(json.dumps(payload, indent=2, sort_keys=True))
        return 0

    for t in manifest.install_targets:
        print(f"install target: {t}")
    if not manifest.skills:
        print("No skills configured.")
        return 0
    rows = [["NAME", "SOURCE", "VERSION", "INTEGRITY", "URL"]]
    for s in manifest.skills:
        rows.append([s.name, s.source, s.version or "-", s.integrity.value, s.url])
    _print_table(rows)
    return 0


def _print_error(err: BaseException, *, verbose: bool) -> None:
    print(f"error: {err}", file=sys.stderr)
    if is_network_error(err):
        print("hint: check your network connection and the source URL", file=sys.stderr)
    if not verbose:
        return
    print("error_details:", file=sys.stderr)
    for i, cause in enumerate(list(iter_causes(err))[1:], start=1):
        print(f"  cause[{i}]: {type(cause).__name__}: {cause}", file=sys.stderr)


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    verbose = bool(getattr(args, "verbose", False)) or bool(os.getenv("SKILLSPKG_DEBUG"))
    setup_logging(
        logging.DEBUG if verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s" if verbose else "%(message)s",
    )
    try:
        if args.cmd == "config":
            return cmd_config(args)
        if args.cmd == "init":
            return cmd_init(args)
        if args.cmd == "add":
            return cmd_add(args)
        if args.cmd == "add-target":
            return cmd_add_target(args)
        if args.cmd in ("install", "i"):
            return cmd_install(args)
        if args.cmd == "update":
            return cmd_update(args)
        if args.cmd in ("uninstall", "remove", "rm"):
            return cmd_uninstall(args)
        if args.cmd == "verify":
            return cmd_verify(args)
        if args.cmd in ("list", "ls"):
            return cmd_list(args)
        raise AssertionError("unreachable")
    except SkillsPkgError as e:
        _print_error(e, verbose=bool(getattr(args, "verbose_errors", False)))
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
