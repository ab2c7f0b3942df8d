"""
Hop CLI
=======
Command-line interface for serving, inspecting, and stopping proxy endpoints.
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import List, Optional, Tuple

import click
from dotenv import load_dotenv

from hop import __version__
from hop.config import (
    CERTS_DIR,
    CONFIG_FILE,
    REGISTRY_FILE,
    HopConfig,
    ProxyRule,
    add_proxy,
    export_rules,
    get_proxy,
    load_config,
    parse_rules,
    remove_proxy,
    save_config,
)
from hop.core.cert import FileCertificateProvider
from hop.core.manager import ProxyManager, wait_for_shutdown
from hop.core.registry import Registry
from hop.errors import ConfigError, HopError
from hop.ui import (
    RequestLog,
    console,
    create_spinner,
    print_error,
    print_info,
    print_proxy,
    print_success,
    print_warning,
    setup_logging,
    show_banner,
    show_paths,
    show_proxy_table,
    show_status_table,
)

load_dotenv()


def _select_rules(cfg: HopConfig, names: Tuple[str, ...]) -> List[ProxyRule]:
    if not names:
        return list(cfg.proxies)
    by_name = {r.name: r for r in cfg.proxies}
    unknown = [n for n in names if n not in by_name]
    if unknown:
        raise click.UsageError(f"Unknown proxy: {', '.join(unknown)}")
    return [by_name[n] for n in names]


def _make_manager(cfg: HopConfig) -> ProxyManager:
    return ProxyManager(
        registry=Registry(),
        certificate_provider=FileCertificateProvider(),
        settings=cfg.settings,
    )


# ── Serve ────────────────────────────────────────────────────────────────────

async def _serve(cfg: HopConfig, rules: List[ProxyRule], quiet: bool = False) -> int:
    manager = _make_manager(cfg)
    if not quiet:
        log = RequestLog()
        manager.on("request", log.on_request)
        manager.on("response", log.on_response)

    started: List[ProxyRule] = []
    with create_spinner() as spinner:
        spinner.add_task("Starting proxy servers...", total=None)
        for rule in rules:
            try:
                await manager.start(rule)
            except HopError as e:
                print_error(f"{rule.name}: {e}")
                continue
            except OSError as e:
                print_error(f"{rule.name}: cannot bind port {rule.port}: {e}")
                continue
            started.append(rule)

    if not started:
        print_error("No proxies started")
        return 1

    print_success("Hop proxy server running!")
    console.print()
    for rule in started:
        engine = manager.get_engine(rule.name)
        print_proxy(rule, engine.url if engine else "")
    console.print()
    print_info("Press Ctrl+C to stop")

    await wait_for_shutdown(manager)
    print_success("Proxy servers stopped")
    return 0


# ── Main CLI ─────────────────────────────────────────────────────────────────

@click.group()
@click.option("--config", "config_path", type=click.Path(dir_okay=False, path_type=Path),
              default=None, help="Config file (default: user config dir)")
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
@click.version_option(__version__, prog_name="hop")
@click.pass_context
def main(ctx, config_path, verbose):
    """Hop: an extensible port proxy + request enhancement CLI tool"""
    ctx.ensure_object(dict)
    try:
        config = load_config(config_path)
    except ConfigError as e:
        setup_logging("INFO")
        print_error(str(e))
        sys.exit(1)

    setup_logging("DEBUG" if verbose else config.settings.log_level)
    ctx.obj["config"] = config
    ctx.obj["config_path"] = config_path or CONFIG_FILE


@main.command()
@click.argument("names", nargs=-1)
@click.option("--quiet", "-q", is_flag=True, help="Do not print a line per request")
@click.pass_context
def serve(ctx, names, quiet):
    """Start the proxy server (optionally specify proxy names)."""
    cfg: HopConfig = ctx.obj["config"]
    if not cfg.proxies:
        print_info(f"No proxies configured. Add one to {ctx.obj['config_path']}")
        return

    rules = _select_rules(cfg, names)
    show_banner()
    code = asyncio.run(_serve(cfg, rules, quiet=quiet))
    sys.exit(code)


main.add_command(serve, name="start")


@main.command(name="list")
@click.pass_context
def list_proxies(ctx):
    """List all configured proxies."""
    cfg: HopConfig = ctx.obj["config"]
    if not cfg.proxies:
        print_info(f"No proxies configured yet. Add one to {ctx.obj['config_path']}")
        return

    manager = _make_manager(cfg)
    states = {row["name"]: row for row in manager.status()}
    show_proxy_table(cfg.proxies, states)


main.add_command(list_proxies, name="ls")


@main.command()
@click.pass_context
def status(ctx):
    """Show proxies currently running in any Hop process."""
    cfg: HopConfig = ctx.obj["config"]
    rows = _make_manager(cfg).status()
    if not rows:
        print_info("No proxies running.")
        return
    show_status_table(rows)


@main.command()
@click.argument("names", nargs=-1)
@click.option("--all", "stop_all", is_flag=True, help="Stop every running proxy")
@click.pass_context
def stop(ctx, names, stop_all):
    """Stop running proxies, including ones owned by other Hop processes."""
    cfg: HopConfig = ctx.obj["config"]
    manager = _make_manager(cfg)

    if stop_all:
        names = tuple(row["name"] for row in manager.status())
    if not names:
        raise click.UsageError("Give at least one proxy name, or --all")

    async def _stop() -> None:
        for name in names:
            entry = manager.registry.get_entry(name)
            if entry is None:
                print_warning(f"Proxy {name} is not running")
                continue
            await manager.stop(name, wait=True)
            if manager.registry.probe.is_alive(entry.pid):
                print_warning(f"Proxy {name} (PID: {entry.pid}) did not confirm shutdown")
            else:
                print_success(f"Proxy {name} stopped")

    asyncio.run(_stop())


# ── Config Editing ───────────────────────────────────────────────────────────

@main.command()
@click.argument("target")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def remove(ctx, target, yes):
    """Remove a configured proxy by name or port."""
    cfg: HopConfig = ctx.obj["config"]
    key = int(target) if target.isdigit() else target
    rule = get_proxy(cfg, key)
    if rule is None:
        print_error(f"No proxy found: {target}")
        sys.exit(1)

    if not yes and not click.confirm(
        f"Remove {rule.name} (port {rule.port} -> {rule.target})?", default=False
    ):
        print_info("Removal cancelled.")
        return

    remove_proxy(cfg, key)
    save_config(cfg, ctx.obj["config_path"])
    print_success(f"Proxy removed: {rule.name}")


@main.command(name="export")
@click.argument("name", required=False)
@click.pass_context
def export_config(ctx, name):
    """Print proxies as a base64 string for sharing."""
    cfg: HopConfig = ctx.obj["config"]
    if not cfg.proxies:
        print_error("No proxies configured to export.")
        sys.exit(1)

    rules = cfg.proxies
    if name:
        rule = get_proxy(cfg, name)
        if rule is None:
            print_error(f"Proxy \"{name}\" not found.")
            sys.exit(1)
        rules = [rule]

    # Plain echo so the string is never wrapped
    click.echo(export_rules(rules))
    if sys.stdout.isatty():
        print_info("Use \"hop import <string>\" to import it.")


@main.command(name="import")
@click.argument("source")
@click.option("--overwrite", is_flag=True, help="Replace existing proxies without asking")
@click.pass_context
def import_config(ctx, source, overwrite):
    """Import proxies from a file, base64 string, or JSON string."""
    cfg: HopConfig = ctx.obj["config"]
    try:
        rules = parse_rules(source)
    except ConfigError as e:
        print_error(f"Import failed: {e}")
        sys.exit(1)

    if not rules:
        print_warning("No proxies found in input.")
        return

    added = updated = 0
    for rule in rules:
        existing = get_proxy(cfg, rule.name) if rule.name else None
        if existing is not None:
            if not overwrite and not click.confirm(
                f"Proxy \"{rule.name}\" already exists. Overwrite?", default=False
            ):
                print_info(f"Skipped proxy: {rule.name}")
                continue
            index = cfg.proxies.index(existing)
            cfg.proxies.remove(existing)
        try:
            add_proxy(cfg, rule)
        except ConfigError as e:
            if existing is not None:
                cfg.proxies.insert(index, existing)
            details = "; ".join(e.errors) if e.errors else str(e)
            print_error(f"Skipped proxy {rule.name or '<unnamed>'}: {details}")
            continue
        if existing is not None:
            cfg.proxies.remove(rule)
            cfg.proxies.insert(index, rule)
            updated += 1
            print_success(f"Updated proxy: {rule.name}")
        else:
            added += 1
            print_success(f"Imported proxy: {rule.name}")

    if added or updated:
        save_config(cfg, ctx.obj["config_path"])
        print_success(f"Import completed. Added: {added}, Updated: {updated}")
    else:
        print_info("No changes made.")


@main.command(name="config")
@click.pass_context
def show_config(ctx):
    """Show where Hop keeps its config, registry, and certificates."""
    provider = FileCertificateProvider(CERTS_DIR)
    show_paths({
        "Config file": str(ctx.obj["config_path"]),
        "Registry": str(REGISTRY_FILE),
        "TLS key": str(provider.key_file),
        "TLS certificate": str(provider.cert_file),
    })


if __name__ == "__main__":
    main()
