"""
LabWatch Agent 命令行入口模块。

提供 CLI 命令：run（前台运行 Agent）、check（验证配置文件）、
snapshot（采集一次指标并输出 JSON）。
"""
import asyncio
import json
import logging
import signal
import sys

import click

from labwatch_agent import __version__
from labwatch_agent.config import AgentConfig, load_config
from labwatch_shared.exceptions import LabwatchError


def _load(ctx) -> AgentConfig:
    config_path = ctx.obj["config_path"]
    try:
        return load_config(config_path)
    except FileNotFoundError:
        if ctx.obj["explicit_config"]:
            raise
        # 未显式指定配置文件时使用默认配置
        return AgentConfig()


@click.group(invoke_without_command=True)
@click.option("--config", "-c", default="/etc/labwatch/agent.yaml", help="Config file path")
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
@click.version_option(version=__version__)
@click.pass_context
def cli(ctx, config, verbose):
    """LabWatch Agent - 实验室机器遥测与策略代理。"""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config
    ctx.obj["explicit_config"] = ctx.get_parameter_source("config") != click.core.ParameterSource.DEFAULT
    ctx.obj["verbose"] = verbose

    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    # 未指定子命令时，显示基本信息
    if ctx.invoked_subcommand is None:
        click.echo(f"LabWatch Agent v{__version__}")
        click.echo(f"Config: {config}")
        click.echo("Use --help for available commands")


@cli.command()
@click.pass_context
def run(ctx):
    """以前台模式运行 Agent。"""
    logger = logging.getLogger("labwatch-agent")

    try:
        cfg = _load(ctx)
    except FileNotFoundError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    from labwatch_agent.loop import AgentLoop
    from labwatch_shared.store import create_store

    try:
        store = create_store(cfg.store.url, cfg.store.token, cfg.store.namespace)
    except LabwatchError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    logger.info(f"Starting LabWatch Agent v{__version__}")
    logger.info(f"Store: {cfg.store.url}")
    logger.info(f"Machine: {cfg.machine_name}")
    logger.info(f"Tick interval: {cfg.loop.interval}s, history every {cfg.loop.history_interval}s")
    logger.info(f"Forbidden processes: {len(cfg.policy.forbidden)}")

    agent = AgentLoop(cfg, store)

    def _show_message(channel, message):
        # 展示层之外的最小呈现：写入终端
        click.echo(f"[{channel}] {message.sender}: {message.text}")

    agent.inbox.add_handler(_show_message)

    loop = asyncio.new_event_loop()

    # 注册信号处理，优雅关闭
    def _shutdown(sig, frame):
        logger.info(f"Received {signal.Signals(sig).name}, shutting down...")
        loop.call_soon_threadsafe(agent.stop)

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    try:
        loop.run_until_complete(agent.run())
    except Exception:
        logger.exception("Agent crashed")
        sys.exit(1)
    finally:
        loop.run_until_complete(store.close())
        loop.close()


@cli.command()
@click.pass_context
def check(ctx):
    """验证配置文件是否正确。"""
    config_path = ctx.obj["config_path"]
    try:
        cfg = load_config(config_path)
        click.echo(f"✅ Config OK: {config_path}")
        click.echo(f"   Store: {cfg.store.url}")
        click.echo(f"   Machine: {cfg.machine.name or '(auto-detect)'}")
        click.echo(f"   Group: {cfg.machine.group or '(from store)'}")
        click.echo(f"   Tick interval: {cfg.loop.interval}s")
        click.echo(f"   History interval: {cfg.loop.history_interval}s")
        click.echo(f"   Forbidden: {', '.join(cfg.policy.forbidden) or '(none)'}")
    except Exception as e:
        click.echo(f"❌ Config error: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.pass_context
def snapshot(ctx):
    """采集一次指标并以 JSON 输出（不写入存储）。"""
    try:
        cfg = _load(ctx)
    except FileNotFoundError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    from labwatch_agent.collector import collect_metrics
    from labwatch_agent.policy import ProcessPolicy
    from labwatch_shared.models import MachineSnapshot

    sample = collect_metrics(cfg.loop.disk_path)
    violations = ProcessPolicy(cfg.policy.forbidden).detect()
    snap = MachineSnapshot(
        pc_name=cfg.machine_name,
        cpu_usage=sample.cpu_usage,
        cpu_temperature=sample.cpu_temperature,
        ram_usage_percent=sample.ram_usage_percent,
        used_ram_mb=sample.used_ram_mb,
        total_ram_mb=sample.total_ram_mb,
        disk_usage_percent=sample.disk_usage_percent,
        forbidden_processes=violations,
    )
    click.echo(json.dumps(snap.to_store(), indent=2, ensure_ascii=False))


def main():
    """CLI 入口函数。"""
    cli()


if __name__ == "__main__":
    main()
