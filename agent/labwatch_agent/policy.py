"""
禁用进程策略模块。

检测正在运行的禁用进程（名称精确匹配或前缀匹配，避免带版本号的可执行文件漏检），
并在上课模式或收到远程命令时结束这些进程。自动结束带冷却时间，
防止对立即重启的进程反复执行 kill。
"""
import logging
import time
from typing import Callable, Iterable, List, Optional

import psutil

logger = logging.getLogger(__name__)

# 默认禁用列表：小写、不带 .exe
DEFAULT_FORBIDDEN = (
    "steam",
    "epicgameslauncher",
    "roblox",
    "minecraft",
    "valorant",
    "fortnite",
    "leagueoflegends",
    "discord",
)

DEFAULT_KILL_COOLDOWN = 10


def normalize_process_name(name: Optional[str]) -> str:
    """进程名转小写并去掉 .exe 后缀。"""
    n = (name or "").strip().lower()
    if n.endswith(".exe"):
        n = n[:-4]
    return n


def is_forbidden(name: str, denylist: Iterable[str]) -> bool:
    return bool(name) and any(name == f or name.startswith(f) for f in denylist)


class ProcessPolicy:
    """禁用进程检测与结束，带自动结束冷却。"""

    def __init__(
        self,
        denylist: Iterable[str] = DEFAULT_FORBIDDEN,
        kill_cooldown: float = DEFAULT_KILL_COOLDOWN,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.denylist = [normalize_process_name(n) for n in denylist if normalize_process_name(n)]
        self.kill_cooldown = kill_cooldown
        self._clock = clock
        self._last_enforced: Optional[float] = None

    def _matching(self) -> List[psutil.Process]:
        matches = []
        for proc in psutil.process_iter(["name"]):
            try:
                name = normalize_process_name(proc.info.get("name"))
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue
            if is_forbidden(name, self.denylist):
                matches.append(proc)
        return matches

    def detect(self) -> List[str]:
        """返回当前运行的禁用进程名（去重、排序）。"""
        return sorted({normalize_process_name(p.info.get("name")) for p in self._matching()})

    def kill_forbidden(self) -> List[str]:
        """结束所有禁用进程（含子进程树），返回成功结束的进程名。

        单个进程失败只记录日志，其余进程照常处理。
        """
        killed = []
        for proc in self._matching():
            name = normalize_process_name(proc.info.get("name"))
            try:
                children = proc.children(recursive=True)
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                children = []
            for child in children:
                try:
                    child.kill()
                except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess) as e:
                    logger.debug(f"Failed to kill child {child.pid} of {name}: {e}")
            try:
                logger.info(f"Killing process {name} (pid {proc.pid})")
                proc.kill()
                killed.append(name)
            except psutil.NoSuchProcess:
                # 已经退出
                killed.append(name)
            except (psutil.AccessDenied, psutil.ZombieProcess) as e:
                logger.warning(f"Failed to kill {name} (pid {proc.pid}): {e}")
        return sorted(set(killed))

    def can_enforce(self) -> bool:
        if self._last_enforced is None:
            return True
        return self._clock() - self._last_enforced >= self.kill_cooldown

    def enforce(self) -> List[str]:
        """上课模式下的自动结束；冷却期内直接跳过。"""
        if not self.can_enforce():
            logger.debug("Kill throttled (cooldown active)")
            return []
        self._last_enforced = self._clock()
        return self.kill_forbidden()
