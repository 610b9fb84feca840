"""
Chat command parsing, permission tiers and command handlers
"""

import asyncio
import inspect
import logging
import re
import time
from dataclasses import dataclass
from enum import IntEnum
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

from config import Settings
from errors import (
    AmbiguousAccount, DirectoryUnavailable, GroupNotFound, Immutable, InvalidCredentials,
    MapExists, MapNotFound, NotEligible, RateLimited, StoreUnavailable, SyncAlreadyRunning,
)
from models import Invoker, SyncMode


logger = logging.getLogger(__name__)

MESSAGE_LIMIT = 1024

PARAM_PATTERN = re.compile(
    r'([^\s"\'“]+)'           # bare word
    r'|"((?:\\"|[^"])*)"'     # "double quoted"
    r"|'((?:\\'|[^'])*)'"     # 'single quoted'
    r'|“([^”]*)”'           # typographic quotes
)


def parse_params(text: str) -> List[str]:
    """
    Split a command line into parameters.

    Quoted parameters may contain spaces; a quote of the same kind is escaped
    with a backslash.
    """
    params = []
    for match in PARAM_PATTERN.finditer(text or ""):
        bare, double, single, typographic = match.groups()
        if bare is not None:
            params.append(bare)
        elif double is not None:
            params.append(double.replace('\\"', '"'))
        elif single is not None:
            params.append(single.replace("\\'", "'"))
        elif typographic is not None:
            params.append(typographic)
    return params


class PermissionLevel(IntEnum):
    NONE = 0
    GUEST = 1
    MEMBER = 2
    RECRUITER = 3
    MOD = 4
    DIVISION_COMMANDER = 5
    STAFF = 6
    ADMIN = 7
    OWNER = 8

    @property
    def label(self) -> str:
        return self.name.replace("_", " ").title()


def resolve_permission(server_groups: Iterable[int], identity: str, settings: Settings) -> PermissionLevel:
    """Highest tier granted by the caller's server groups; owner ids always get Owner."""
    if identity in settings.owner_unique_ids:
        return PermissionLevel.OWNER

    groups = set(server_groups)
    tiers = (
        (PermissionLevel.ADMIN, settings.admin_groups),
        (PermissionLevel.STAFF, settings.staff_groups),
        (PermissionLevel.DIVISION_COMMANDER, settings.division_command_groups),
        (PermissionLevel.MOD, settings.mod_groups),
        (PermissionLevel.RECRUITER, settings.recruiter_groups),
        (PermissionLevel.MEMBER, settings.member_groups),
        (PermissionLevel.GUEST, settings.guest_groups),
    )
    for level, tier_groups in tiers:
        if groups & tier_groups:
            return level
    return PermissionLevel.NONE


def split_message(text: str, limit: int = MESSAGE_LIMIT) -> List[str]:
    """Break a reply into chunks the server accepts, on line boundaries where possible."""
    chunks = []
    current = None
    for line in text.split("\n"):
        while len(line) > limit:
            if current is not None:
                chunks.append(current)
                current = None
            chunks.append(line[:limit])
            line = line[limit:]
        if current is None:
            current = line
        elif len(current) + 1 + len(line) > limit:
            chunks.append(current)
            current = line
        else:
            current = f"{current}\n{line}"
    # A blank remainder is only kept when it is the whole message
    if current or not chunks:
        chunks.append(current or "")
    return chunks


def format_duration(seconds: float) -> str:
    seconds = int(round(seconds))
    days, seconds = divmod(seconds, 86400)
    hours, seconds = divmod(seconds, 3600)
    minutes, seconds = divmod(seconds, 60)
    return f"{days} days {hours} hours {minutes} minutes {seconds} seconds"


@dataclass
class CommandContext:
    dispatcher: "CommandDispatcher"
    invoker: Invoker
    command: str
    args: List[str]
    permission: PermissionLevel

    async def reply(self, text: str):
        await self.dispatcher.reply(self.invoker, text)

    async def report_error(self, error: Exception):
        """Operators get the cause, everyone else a terse notice."""
        logger.error(f"{self.command} for {self.invoker} failed: {error}")
        if self.permission >= PermissionLevel.MOD:
            await self.reply(f"An error occurred while processing your request\n{error}")
        else:
            await self.reply("An error occurred while processing your request")


Handler = Callable[[CommandContext], Optional[Awaitable[None]]]


@dataclass(frozen=True)
class Command:
    min_permission: PermissionLevel
    args: str
    help_text: List[str]
    handler: Handler
    do_log: bool = True
    log_args: bool = True


# Handlers

HELP_FOOTER = "\n**Note** : Parameters that require spaces must be 'single' or \"double\" quoted."


def command_help(ctx: CommandContext):
    filter_name = ctx.args[0] if ctx.args else None
    detail = filter_name is not None or ctx.permission == PermissionLevel.NONE
    prefix = ctx.dispatcher.settings.command_prefix

    message = "\n"
    if not detail:
        message += (f"User Level: **{ctx.permission.label}** Commands "
                    f"(Use {prefix}help <cmd> to see the details of each command):\n\n")

    for name, command in ctx.dispatcher.commands.items():
        if command.min_permission > ctx.permission or (filter_name and filter_name != name):
            continue
        if detail:
            message += f"{prefix}{name} {command.args}\n> " + "\n> ".join(command.help_text) + "\n"
        else:
            message += f"{prefix}{name} {command.args}\n"

    return ctx.reply(message + HELP_FOOTER)


async def command_login(ctx: CommandContext):
    if len(ctx.args) < 2:
        await ctx.reply("Username and Password must be provided.")
        return
    username, secret = ctx.args[0], ctx.args[1]

    try:
        result = await ctx.dispatcher.linker.link_identity(ctx.invoker, username, secret)
    except RateLimited as e:
        minutes = round(e.retry_after_ms / 60000)
        await ctx.reply(f"You have too many failed login attempts. Please wait {minutes} minutes and try again.")
        return
    except InvalidCredentials as e:
        await ctx.reply(str(e))
        return
    except AmbiguousAccount:
        await ctx.reply("Your TeamSpeak ID is linked to more than one forum account. Please contact an administrator.")
        return
    except StoreUnavailable as e:
        await ctx.report_error(e)
        return

    message = f"Successfully logged in as {result.username} ({result.account_id})."
    if result.granted_groups:
        message += f" Added to {', '.join(result.granted_groups)}."
    if result.grant_failed:
        message += " There was an error updating your server groups, they will be set on the next sync."
    await ctx.reply(message)


def command_ping(ctx: CommandContext):
    return ctx.reply("\nPong!")


def command_status(ctx: CommandContext):
    lifecycle = ctx.dispatcher.lifecycle
    now = time.time()
    start_time = getattr(lifecycle, "start_time", None) or ctx.dispatcher.created_at
    connect_time = getattr(lifecycle, "connect_time", None) or start_time
    return ctx.reply("\n"
                     f"Up Time: {format_duration(now - start_time)}\n"
                     f"Connected Time: {format_duration(now - connect_time)}")


async def _show_map(ctx: CommandContext):
    try:
        forum_groups = {g.id: g.name for g in await asyncio.to_thread(ctx.dispatcher.store.list_groups)}
    except StoreUnavailable as e:
        await ctx.report_error(e)
        return

    message = "Configured Group Maps:\n"
    for name, mapping in ctx.dispatcher.group_map.list_mappings().items():
        groups = ', '.join(f"{forum_groups.get(g, 'unknown')} ({g})" for g in mapping.forum_groups)
        message += f"{name}{' (permanent)' if mapping.permanent else ''}: {groups}\n"
    await ctx.reply(message)


async def _show_ts_groups(ctx: CommandContext):
    try:
        groups = await ctx.dispatcher.directory.list_groups()
    except DirectoryUnavailable as e:
        await ctx.report_error(e)
        return
    suffix = ctx.dispatcher.settings.ts_officer_suffix
    names = [g.name for g in groups if g.name.endswith(suffix)]
    await ctx.reply("TeamSpeak Officer Groups:\n" + "\n".join(names))


async def _show_forum_groups(ctx: CommandContext):
    try:
        groups = await asyncio.to_thread(ctx.dispatcher.store.list_groups)
    except StoreUnavailable as e:
        await ctx.report_error(e)
        return
    suffix = ctx.dispatcher.settings.forum_officer_suffix
    lines = sorted(f"{g.name} ({g.id})" for g in groups if g.name.endswith(suffix))
    await ctx.reply("Forum Officer Groups:\n" + "\n".join(lines))


async def _run_sync(ctx: CommandContext, mode: SyncMode):
    try:
        await ctx.dispatcher.reconciler.run_sync(mode, notify=ctx.reply)
    except SyncAlreadyRunning:
        await ctx.reply("A forum sync is already running, try again later.")


async def _resolve_groups(ctx: CommandContext, chat_group_name: str, forum_group_name: str):
    chat_group = await ctx.dispatcher.directory.get_group_by_name(chat_group_name)
    if chat_group is None:
        raise GroupNotFound(f"{chat_group_name} server group not found")
    forum_groups = await asyncio.to_thread(ctx.dispatcher.store.list_groups)
    forum_group = next((g for g in forum_groups if g.name == forum_group_name), None)
    if forum_group is None:
        raise GroupNotFound(f"{forum_group_name} group not found")
    return chat_group, forum_group


async def _edit_map(ctx: CommandContext, action: str, args: List[str]):
    if len(args) < 2:
        await ctx.reply(f'Usage: groupsync {action} "<tsgroup>" "<forumgroup>"')
        return
    chat_group_name, forum_group_name = args[0], args[1]
    group_map = ctx.dispatcher.group_map

    try:
        group_map.check_eligible(chat_group_name, forum_group_name)
        chat_group, forum_group = await _resolve_groups(ctx, chat_group_name, forum_group_name)
        if action == "add":
            group_map.add_mapping(chat_group, forum_group)
            message = f"Mapped group {forum_group.name} to server group {chat_group.name}"
        else:
            group_map.remove_mapping(chat_group, forum_group)
            message = f"Removed group {forum_group.name} from server group {chat_group.name}"
    except (NotEligible, Immutable, MapExists, MapNotFound, GroupNotFound) as e:
        await ctx.reply(str(e))
        return
    except (StoreUnavailable, DirectoryUnavailable, OSError) as e:
        await ctx.report_error(e)
        return
    await ctx.reply(message)


async def command_groupsync(ctx: CommandContext):
    if not ctx.args:
        return
    sub_command, args = ctx.args[0], ctx.args[1:]

    if sub_command == "showmap":
        await _show_map(ctx)
    elif sub_command == "showtsgroups":
        await _show_ts_groups(ctx)
    elif sub_command == "showforumgroups":
        await _show_forum_groups(ctx)
    elif sub_command == "check":
        await _run_sync(ctx, SyncMode.CHECK)
    elif sub_command == "sync":
        await _run_sync(ctx, SyncMode.APPLY)
    elif sub_command in ("add", "rem"):
        await _edit_map(ctx, sub_command, args)
    else:
        await ctx.reply(f"Unknown groupsync command {sub_command}")


async def command_reload(ctx: CommandContext):
    logger.info(f"Reload config requested by {ctx.invoker}")
    lifecycle = ctx.dispatcher.lifecycle
    if lifecycle is not None:
        lifecycle.reload_settings()
    ctx.dispatcher.group_map.load()
    await ctx.reply("\nConfiguration reloaded")


async def command_quit(ctx: CommandContext):
    logger.info(f"Bot quit requested by {ctx.invoker}")
    await ctx.reply("\nBye")
    if ctx.dispatcher.lifecycle is not None:
        await ctx.dispatcher.lifecycle.stop()


COMMANDS: Dict[str, Command] = {
    "help": Command(
        min_permission=PermissionLevel.NONE,
        args="[<command>]",
        help_text=["Displays the help menu. If <command> is present, only that command will be shown."],
        handler=command_help,
        do_log=False,
    ),
    "login": Command(
        min_permission=PermissionLevel.NONE,
        args='"<username|email>" "<password>"',
        help_text=["Associate TeamSpeak ID to forum account."],
        handler=command_login,
        log_args=False,
    ),
    "ping": Command(
        min_permission=PermissionLevel.GUEST,
        args="",
        help_text=["Returns a message letting you know the bot is alive."],
        handler=command_ping,
        do_log=False,
    ),
    "groupsync": Command(
        min_permission=PermissionLevel.MOD,
        args="<cmd> [<options>]",
        help_text=[
            "Forum sync integration commands:",
            "*showmap*: Shows the current synchronization map",
            "*showtsgroups*: Shows the TeamSpeak groups eligible for integration",
            "*showforumgroups*: Shows the forum groups eligible for integration",
            "*check*: Checks for exceptions between forum groups and mapped server groups",
            "*sync*: Adds and removes members from TeamSpeak groups based on forum groups",
            "*add \"<tsgroup>\" \"<group>\"*: Maps the forum <group> to the <tsgroup>",
            "*rem \"<tsgroup>\" \"<group>\"*: Removes the forum group from the map for the <tsgroup>",
        ],
        handler=command_groupsync,
    ),
    "reload": Command(
        min_permission=PermissionLevel.OWNER,
        args="",
        help_text=["Reload the configuration"],
        handler=command_reload,
    ),
    "status": Command(
        min_permission=PermissionLevel.ADMIN,
        args="",
        help_text=["Bot Status"],
        handler=command_status,
    ),
    "quit": Command(
        min_permission=PermissionLevel.OWNER,
        args="",
        help_text=["Terminate the bot"],
        handler=command_quit,
    ),
}


def validate_registry(commands: Dict[str, Command]):
    """Raise ValueError describing every incomplete command entry."""
    problems = []
    for name, command in commands.items():
        if not name or name != name.strip() or " " in name:
            problems.append(f"invalid command name {name!r}")
        if not isinstance(command, Command):
            problems.append(f"{name}: not a Command")
            continue
        if not isinstance(command.min_permission, PermissionLevel):
            problems.append(f"{name}: min_permission is not a permission level")
        if not callable(command.handler):
            problems.append(f"{name}: handler is not callable")
        if not command.help_text or not all(command.help_text):
            problems.append(f"{name}: missing help text")
        if command.args is None:
            problems.append(f"{name}: missing argument description")
    if "help" not in commands:
        problems.append("help command is not registered")
    if problems:
        raise ValueError("Invalid command registry: " + "; ".join(problems))


class CommandDispatcher:
    """Turns private text messages into command handler calls."""

    def __init__(self, settings: Settings, send: Callable[[int, str], Awaitable[None]],
                 linker=None, reconciler=None, group_map=None, store=None, directory=None,
                 lifecycle=None, commands: Optional[Dict[str, Command]] = None):
        self.settings = settings
        self.send = send
        self.linker = linker
        self.reconciler = reconciler
        self.group_map = group_map
        self.store = store
        self.directory = directory
        self.lifecycle = lifecycle
        self.commands = COMMANDS if commands is None else commands
        self.created_at = time.time()
        validate_registry(self.commands)

    async def reply(self, invoker: Invoker, text: str):
        for chunk in split_message(text):
            await self.send(invoker.client_id, chunk)

    async def dispatch(self, invoker: Invoker, message: str) -> bool:
        """
        Run the command in ``message`` on behalf of ``invoker``.

        Returns True if a handler was invoked. Unknown commands and commands
        above the caller's tier are ignored without a reply.
        """
        prefix = self.settings.command_prefix
        if not message.startswith(prefix):
            return False

        head, _, arg_string = message[len(prefix):].partition(" ")
        name = head.strip()
        command = self.commands.get(name)
        if command is None:
            return False

        permission = resolve_permission(invoker.server_groups, invoker.identity, self.settings)
        if command.min_permission > permission:
            logger.debug(f"{invoker} ({permission.label}) not permitted to run {name}")
            return False

        args = parse_params(arg_string.strip())
        if command.do_log:
            if command.log_args:
                args_text = '" "'.join(args)
                logger.info(f'{invoker} executed: {name} "{args_text}"')
            else:
                logger.info(f"{invoker} executed: {name}")

        ctx = CommandContext(dispatcher=self, invoker=invoker, command=name, args=args, permission=permission)
        try:
            result = command.handler(ctx)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception(f"Command {name} from {invoker} failed")
        return True
