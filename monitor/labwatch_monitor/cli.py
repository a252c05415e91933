"""
LabWatch Monitor 命令行入口模块。

run 以前台模式运行汇总循环与清理任务；其余子命令执行一次性的
查询或操作员动作（下发命令、发送消息、改名、改组、上课模式、历史）。
配置来自 LABWATCH_ 前缀的环境变量和 .env 文件。
"""
import asyncio
import json
import logging
import signal
import sys
from datetime import timedelta

import click
from pydantic import ValidationError

from labwatch_monitor import __version__
from labwatch_monitor.core.config import Settings
from labwatch_shared.exceptions import ConfigError, LabwatchError
from labwatch_shared.store import create_store
from labwatch_shared.timeutil import relative_time, utcnow

logger = logging.getLogger("labwatch-monitor")


def _open_store(settings: Settings):
    return create_store(settings.store_url, settings.store_token, settings.store_namespace)


def _execute(ctx, action):
    """创建存储并运行 action(store, settings)，统一处理错误与关闭。"""
    settings: Settings = ctx.obj["settings"]

    async def _main():
        store = _open_store(settings)
        try:
            return await action(store, settings)
        finally:
            await store.close()

    try:
        return asyncio.run(_main())
    except LabwatchError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


def _actions(store, settings):
    # 一次性命令不持有通知引擎：运行中的监控端从存储观察这些变化
    from labwatch_monitor.services.fleet_actions import FleetActions

    return FleetActions(store, sender=settings.machine_identity)


@click.group(invoke_without_command=True)
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
@click.version_option(version=__version__)
@click.pass_context
def cli(ctx, verbose):
    """LabWatch Monitor - 机群汇总、告警与远程操作。"""
    ctx.ensure_object(dict)

    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    if "settings" not in ctx.obj:
        try:
            ctx.obj["settings"] = Settings()
        except ValidationError as e:
            click.echo(f"❌ Config error: {e}", err=True)
            sys.exit(1)

    if ctx.invoked_subcommand is None:
        settings = ctx.obj["settings"]
        click.echo(f"LabWatch Monitor v{__version__}")
        click.echo(f"Store: {settings.store_url}")
        click.echo("Use --help for available commands")


@cli.command()
@click.option("--force", is_flag=True, help="Skip the designated monitor check")
@click.pass_context
def run(ctx, force):
    """以前台模式运行监控端。"""
    from labwatch_monitor.core.roles import is_designated_monitor
    from labwatch_monitor.services.history import HistoryService
    from labwatch_monitor.services.notifications import NotificationEngine
    from labwatch_monitor.services.reconciler import FleetReconciler
    from labwatch_monitor.services.webhook import WebhookForwarder
    from labwatch_monitor.tasks.cleanup import message_cleanup_loop, notification_purge_loop
    from labwatch_monitor.tasks.history_retention import history_retention_loop
    from labwatch_monitor.tasks.reconcile_loop import ReconcileLoop

    settings: Settings = ctx.obj["settings"]
    identity = settings.machine_identity

    async def _run(store, settings):
        if not force and not await is_designated_monitor(store, identity, settings.monitor_identity_list):
            raise ConfigError(
                f"{identity} is not a designated monitor "
                f"(set LABWATCH_MONITOR_IDENTITIES or masters/{identity}); use --force to run anyway"
            )

        logger.info(f"Starting LabWatch Monitor v{__version__} as {identity}")
        logger.info(f"Store: {settings.store_url}")
        logger.info(f"Reconcile interval: {settings.reconcile_interval}s, online threshold: {settings.online_threshold}s")

        engine = NotificationEngine(retention=timedelta(hours=settings.notification_retention_hours))
        webhook = None
        if settings.webhook_url:
            webhook = WebhookForwarder(settings.webhook_url)
            engine.add_listener(webhook)
            logger.info(f"Forwarding notifications to {settings.webhook_url}")

        reconciler = FleetReconciler(
            store, engine,
            online_threshold=settings.online_threshold,
            high_temperature=settings.high_temperature,
        )

        def _on_result(result):
            for event in result.events:
                if event.kind != "updated":
                    logger.info(f"Fleet: {event}")
            online = sum(1 for s in result.statuses.values() if s.online)
            logger.debug(f"{online}/{len(result.statuses)} online | {reconciler.status_line()}")

        loop = ReconcileLoop(reconciler, settings.reconcile_interval, on_result=_on_result)
        stop_event = loop.stop_event

        aio_loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                aio_loop.add_signal_handler(sig, loop.stop)
            except NotImplementedError:
                # Windows 上不支持，依赖 KeyboardInterrupt
                pass

        try:
            await asyncio.gather(
                loop.run(),
                message_cleanup_loop(store, settings.message_staleness, stop_event,
                                     interval=settings.message_cleanup_interval),
                notification_purge_loop(engine, stop_event, interval=settings.notification_purge_interval),
                history_retention_loop(HistoryService(store, settings.history_retention_days), stop_event,
                                       interval=settings.history_cleanup_interval),
            )
        finally:
            if webhook is not None:
                await webhook.close()
        logger.info("Monitor stopped")

    _execute(ctx, _run)


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Output JSON")
@click.pass_context
def status(ctx, as_json):
    """执行一次汇总并显示机群状态。"""
    from labwatch_monitor.services.reconciler import FleetReconciler

    async def _status(store, settings):
        reconciler = FleetReconciler(store, online_threshold=settings.online_threshold,
                                     high_temperature=settings.high_temperature)
        return reconciler, await reconciler.tick()

    reconciler, result = _execute(ctx, _status)

    if as_json:
        data = {
            "ok": result.ok,
            "errors": result.errors,
            "groups": result.groups,
            "class_modes": result.class_modes,
            "machines": {
                name: {**s.snapshot.to_store(), "LastSeen": s.last_seen}
                for name, s in result.statuses.items()
            },
        }
        click.echo(json.dumps(data, indent=2, ensure_ascii=False))
        return

    for group, members in result.groups.items():
        mode = " [modo clase]" if result.class_modes.get(group) else ""
        click.echo(f"{group}{mode}")
        for name in members:
            s = result.statuses[name]
            snap = s.snapshot
            flags = []
            if s.clock_issue:
                flags.append("hora")
            if s.forbidden:
                flags.append("prohibido: " + ",".join(snap.forbidden_processes))
            if s.high_temperature:
                flags.append("temperatura")
            if s.hardware_error:
                flags.append("hardware")
            state = "ONLINE " if s.online else "OFFLINE"
            click.echo(
                f"  {state} {snap.display_name:<20} cpu {snap.cpu_usage:5.1f}%  "
                f"temp {snap.cpu_temperature:5.1f}°C  ram {snap.ram_usage_percent:5.1f}%  "
                f"disk {snap.disk_usage_percent:5.1f}%  {s.last_seen}"
                + (f"  ! {'; '.join(flags)}" if flags else "")
            )
    click.echo(reconciler.status_line())
    if not result.ok:
        sys.exit(1)


@cli.command("send-command")
@click.argument("pc_name")
@click.argument("command", default="KILL_FORBIDDEN")
@click.pass_context
def send_command(ctx, pc_name, command):
    """向机器下发命令（覆盖尚未执行的命令）。"""
    async def _send(store, settings):
        await _actions(store, settings).send_command(pc_name, command)

    _execute(ctx, _send)
    click.echo(f"✅ {command.upper()} -> {pc_name}")


@cli.command("clear-command")
@click.argument("pc_name")
@click.pass_context
def clear_command(ctx, pc_name):
    """删除机器尚未执行的命令。"""
    async def _clear(store, settings):
        return await _actions(store, settings).clear_command(pc_name)

    pending = _execute(ctx, _clear)
    if pending is None:
        click.echo(f"No pending command for {pc_name}")
    else:
        click.echo(f"✅ Cleared {pending} for {pc_name}")


@cli.command()
@click.argument("text")
@click.pass_context
def broadcast(ctx, text):
    """发送全局消息。"""
    async def _broadcast(store, settings):
        return await _actions(store, settings).broadcast(text)

    message = _execute(ctx, _broadcast)
    click.echo(f"✅ Global message {message.id} sent")


@cli.command("message-group")
@click.argument("group")
@click.argument("text")
@click.pass_context
def message_group(ctx, group, text):
    """向分组发送消息。"""
    async def _message(store, settings):
        return await _actions(store, settings).message_group(group, text)

    message = _execute(ctx, _message)
    click.echo(f"✅ Message {message.id} sent to {group}")


@cli.command("class-mode")
@click.argument("group")
@click.argument("state", type=click.Choice(["on", "off"]))
@click.pass_context
def class_mode(ctx, group, state):
    """开启或关闭分组上课模式。"""
    async def _toggle(store, settings):
        await _actions(store, settings).set_class_mode(group, state == "on")

    _execute(ctx, _toggle)
    click.echo(f"✅ Class mode {state} for {group}")


@cli.command()
@click.argument("pc_name")
@click.argument("nickname")
@click.pass_context
def rename(ctx, pc_name, nickname):
    """修改机器显示名。"""
    async def _rename(store, settings):
        return await _actions(store, settings).rename(pc_name, nickname)

    snapshot = _execute(ctx, _rename)
    click.echo(f"✅ {pc_name} is now {snapshot.nickname}")


@cli.command()
@click.argument("pc_name")
@click.argument("group")
@click.pass_context
def regroup(ctx, pc_name, group):
    """修改机器分组。"""
    async def _regroup(store, settings):
        return await _actions(store, settings).regroup(pc_name, group)

    snapshot = _execute(ctx, _regroup)
    click.echo(f"✅ {pc_name} moved to {snapshot.group}")


@cli.command()
@click.argument("pc_name")
@click.option("--hours", type=float, default=None, help="Only show the last N hours")
@click.option("--json", "as_json", is_flag=True, help="Output JSON")
@click.pass_context
def history(ctx, pc_name, hours, as_json):
    """显示机器的历史点。"""
    from labwatch_monitor.services.history import HistoryService

    async def _history(store, settings):
        service = HistoryService(store, settings.history_retention_days)
        since = utcnow() - timedelta(hours=hours) if hours else None
        return await service.history(pc_name, since)

    points = _execute(ctx, _history)
    if as_json:
        click.echo(json.dumps([p.snapshot.to_store() for p in points], indent=2, ensure_ascii=False))
        return
    if not points:
        click.echo(f"No history for {pc_name}")
        return
    for p in points:
        s = p.snapshot
        click.echo(
            f"{s.last_update}  cpu {s.cpu_usage:5.1f}%  temp {s.cpu_temperature:5.1f}°C  "
            f"ram {s.ram_usage_percent:5.1f}%  disk {s.disk_usage_percent:5.1f}%  ({relative_time(s.last_update)})"
        )


@cli.command("cleanup-history")
@click.pass_context
def cleanup_history(ctx):
    """立即按保留期清理历史点。"""
    from labwatch_monitor.services.history import HistoryService

    async def _cleanup(store, settings):
        return await HistoryService(store, settings.history_retention_days).cleanup()

    stats = _execute(ctx, _cleanup)
    click.echo(f"✅ Removed {stats.total} history points")
    for name, count in sorted(stats.expired.items()):
        click.echo(f"   {name}: {count} expired")
    for name, count in sorted(stats.invalid.items()):
        click.echo(f"   {name}: {count} invalid")
    if stats.errors:
        for err in stats.errors:
            click.echo(f"❌ {err}", err=True)
        sys.exit(1)


def main():
    """CLI 入口函数。"""
    cli()


if __name__ == "__main__":
    main()
