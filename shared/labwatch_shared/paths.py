"""
远程存储路径约定。

machines/{pc}/current          当前快照（覆盖写）
machines/{pc}/history/{key}    历史点（追加）
commands/{pc}                  待执行命令（单槽）
global_message                 全局消息
lab_messages/{group}           分组消息
groups/{group}/classMode       分组上课模式
masters/{pc}                   指定的监控端
"""

MACHINES = "machines"
COMMANDS = "commands"
GLOBAL_MESSAGE = "global_message"
LAB_MESSAGES = "lab_messages"
GROUPS = "groups"
MASTERS = "masters"

# 分组为空时的默认标签
DEFAULT_GROUP = "ungrouped"
# 全局消息/通知使用的作用域
GLOBAL_SCOPE = "all"


def split_path(path: str) -> list[str]:
    """拆分路径，忽略首尾及重复的斜杠。"""
    return [p for p in str(path).split("/") if p]


def join_path(*parts: str) -> str:
    return "/".join(seg for part in parts for seg in split_path(part))


def machine_current(pc_name: str) -> str:
    return join_path(MACHINES, pc_name, "current")


def machine_history(pc_name: str) -> str:
    return join_path(MACHINES, pc_name, "history")


def command_slot(pc_name: str) -> str:
    return join_path(COMMANDS, pc_name)


def lab_message(group: str) -> str:
    return join_path(LAB_MESSAGES, group)


def class_mode(group: str) -> str:
    return join_path(GROUPS, group, "classMode")


def master_flag(pc_name: str) -> str:
    return join_path(MASTERS, pc_name)


def normalize_group(group) -> str:
    """分组名去除首尾空白，空值回退为默认分组。"""
    if group is None:
        return DEFAULT_GROUP
    g = str(group).strip()
    return g or DEFAULT_GROUP
