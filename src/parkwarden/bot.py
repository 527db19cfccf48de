from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Awaitable, Callable

import discord
from discord.ext import commands

from parkwarden.config import Settings
from parkwarden.services.access_service import TIER_INSTALL, TIER_OPERATE, TIER_RUN, AccessService
from parkwarden.services.botdata_service import BotDataService
from parkwarden.services.build_service import BuildFeedError, BuildService
from parkwarden.services.config_service import (
    ConfigValueError,
    ServerConfigService,
    format_config,
    resolve_key,
    setting_label,
    split_setting,
)
from parkwarden.services.install_service import InstallService
from parkwarden.services.logger_service import LoggerService
from parkwarden.services.process_service import AUTOSAVE, ProcessManager
from parkwarden.services.server_files import ConfigReadError, ServerFilesService
from parkwarden.services.status_service import StatusQueryError, StatusService, format_status
from parkwarden.services.supervisor_service import CheckerReply, SupervisorService
from parkwarden.services.vote_service import CHANGE_DELAY_SEC, VOTE_EMOJIS, VOTE_WINDOW_SEC, ScenarioVote
from parkwarden.storage import MessagePackStore
from parkwarden.utils.command_args import CommandArgs, parse_command_args
from parkwarden.utils.discord_utils import resolve_text_channel

FORWARDED_LOG_PREFIXES = ("supervisor.", "install.", "command.")
MAX_LISTED_SCENARIOS = 20
MAX_LISTED_LOG_ROWS = 25


class ParkBot(commands.Bot):
    def __init__(self, settings: Settings) -> None:
        intents = discord.Intents.default()
        intents.guilds = True
        intents.members = True
        intents.messages = True
        intents.message_content = True
        super().__init__(command_prefix=settings.command_prefix, intents=intents, help_command=None)
        self.settings = settings
        self.store = MessagePackStore(settings.store_path)
        self.logger = LoggerService(self.store, settings.log_file)
        self.access = AccessService(self.store)
        self.botdata = BotDataService(self.store)
        self.files = ServerFilesService(settings)
        self.processes = ProcessManager(settings, self.files, self.logger)
        self.server_config = ServerConfigService(settings, self.files)
        self.voting = ScenarioVote(self.files)
        self._vote_task: asyncio.Task | None = None
        self.server_status = StatusService(settings)
        self.builds = BuildService(settings)
        self.installer = InstallService(settings, self.processes, self.files, self.builds, self.logger)
        self.supervisor = SupervisorService(
            settings,
            self.processes,
            self.files,
            self.server_status,
            self.builds,
            self.botdata,
            self.installer,
            self.logger,
            self.send_alert,
        )
        self.started_at = datetime.now(tz=timezone.utc)
        self._autosave_task: asyncio.Task | None = None
        self._ready_once = False
        self.logger.subscribe(self._on_log_row)

    async def setup_hook(self) -> None:
        await self.store.load()
        self._autosave_task = asyncio.create_task(self.store.autosave_loop(), name="msgpack-autosave")
        self._register_commands()

    async def close(self) -> None:
        self.supervisor.shutdown()
        self._cancel_vote_task()
        if self._autosave_task is not None:
            self._autosave_task.cancel()
        if self.store.dirty:
            await self.store.save()
        await super().close()

    def _tier_check(self, min_tier: int) -> Callable[[commands.Context], bool]:
        async def predicate(ctx: commands.Context) -> bool:
            return self.access.can_run(ctx.author, min_tier)

        return commands.check(predicate)

    def _register_commands(self) -> None:
        @self.command(name="status")
        @self._tier_check(TIER_RUN)
        async def status_cmd(ctx: commands.Context) -> None:
            await ctx.send(self.status_summary())

        @self.command(name="isup", aliases=["up"])
        async def isup(ctx: commands.Context, *queries: str) -> None:
            inputs = [query.lower() for query in queries] or [self.settings.default_ip]
            try:
                result = await self.server_status.query_status(inputs)
            except StatusQueryError as exc:
                self.logger.log("command.isup_failed", error=str(exc)[:300])
                await ctx.send("Could not successfully check server status.")
                return
            await ctx.send(format_status(result, inputs))

        @self.command(name="devbuild", aliases=["latest", "dvb"])
        async def devbuild(ctx: commands.Context) -> None:
            await self._send_build_details(ctx, "dev")

        @self.command(name="launcher", aliases=["lnc"])
        async def launcher(ctx: commands.Context) -> None:
            await self._send_build_details(ctx, "launcher")

        @self.command(name="scenarios", aliases=["maps"])
        @self._tier_check(TIER_RUN)
        async def scenarios(ctx: commands.Context, *, search: str = "") -> None:
            names = self.files.list_scenarios(search)
            if not names:
                await ctx.send(f"No scenario found with '{search}'." if search else "No scenarios available.")
                return
            listed = "\n".join(names[:MAX_LISTED_SCENARIOS])
            more = f"\n...and {len(names) - MAX_LISTED_SCENARIOS} more" if len(names) > MAX_LISTED_SCENARIOS else ""
            await ctx.send(f"{listed}{more}"[:1900])

        @self.command(name="run", aliases=["changemap"])
        @self._tier_check(TIER_RUN)
        async def run_cmd(ctx: commands.Context, *, raw: str = "") -> None:
            reply = await self.run_scenario(parse_command_args(raw))
            self.logger.log("command.run", actor_id=ctx.author.id, raw=raw, reply=reply[:200])
            await ctx.send(reply[:1900])

        @self.command(name="stop", aliases=["kill"])
        @self._tier_check(TIER_OPERATE)
        async def stop_cmd(ctx: commands.Context, slot: int = 1) -> None:
            self.processes.stop(slot)
            self.logger.log("command.stop", actor_id=ctx.author.id, slot=slot)
            await ctx.send(f"Successfully sent signal to stop Server #{slot}.")

        @self.group(name="checker", aliases=["ivchecker"], invoke_without_command=True)
        @self._tier_check(TIER_OPERATE)
        async def checker_group(ctx: commands.Context) -> None:
            await ctx.send(self.status_summary())

        @checker_group.command(name="start")
        @self._tier_check(TIER_OPERATE)
        async def checker_start(ctx: commands.Context, *, raw: str = "") -> None:
            reply = self.start_checker(parse_command_args(raw))
            self.logger.log("command.checker_start", actor_id=ctx.author.id, raw=raw, ok=reply.ok)
            await ctx.send(reply.message)

        @checker_group.command(name="stop")
        @self._tier_check(TIER_OPERATE)
        async def checker_stop(ctx: commands.Context, *, raw: str = "") -> None:
            reply = self.stop_checker(parse_command_args(raw))
            self.logger.log("command.checker_stop", actor_id=ctx.author.id, raw=raw, ok=reply.ok)
            await ctx.send(reply.message)

        @self.command(name="logs")
        @self._tier_check(TIER_OPERATE)
        async def logs_cmd(ctx: commands.Context, prefix: str = "supervisor.", limit: int = 10) -> None:
            rows = self.logger.recent(prefix, max(1, min(limit, MAX_LISTED_LOG_ROWS)))
            if not rows:
                await ctx.send(f"No log rows starting with `{prefix}`.")
                return
            await ctx.send("\n".join(_format_log_payload(row) for row in rows)[:1900])

        @self.command(name="grant")
        @self._tier_check(TIER_INSTALL)
        async def grant_cmd(ctx: commands.Context, member: discord.Member, tier: int) -> None:
            self.access.set_user_tier(member.id, tier)
            self.logger.log("command.grant", actor_id=ctx.author.id, target_id=member.id, tier=tier)
            await ctx.send(f"{member.display_name} now has tier `{self.access.get_tier(member)}`.")

        @self.command(name="config", aliases=["svrconfig"])
        @self._tier_check(TIER_INSTALL)
        async def config_cmd(ctx: commands.Context, *, raw: str = "") -> None:
            reply = self.configure_server(raw)
            self.logger.log("command.config", actor_id=ctx.author.id, raw=raw, reply=reply[:200])
            await ctx.send(reply[:1900])

        @self.command(name="vote")
        @self._tier_check(TIER_RUN)
        async def vote_cmd(ctx: commands.Context, option: str = "") -> None:
            if option == "-c":
                self._cancel_vote_task()
                cancelled = self.voting.cancel()
                await ctx.send("Scenario voting cancelled!" if cancelled else "There is no scenario vote running.")
                return
            if self.installer.install_in_progress():
                await ctx.send("Cannot start a vote at this time. Installing new OpenRCT2 build.")
                return
            self._cancel_vote_task()
            choices = self.voting.open()
            if not choices:
                await ctx.send("No scenarios available to vote on.")
                return
            ballot = await ctx.send(self.voting.ballot())
            for emoji in VOTE_EMOJIS[: len(choices)]:
                await ballot.add_reaction(emoji)
            await ballot.edit(
                content=f"{ballot.content}\n\n**Voting will end in {VOTE_WINDOW_SEC} seconds! "
                "Please take this time to save as well.**"
            )
            self.logger.log("command.vote", actor_id=ctx.author.id, choices=len(choices))
            self._vote_task = asyncio.create_task(self._collect_votes(ballot), name="scenario-vote")

        @self.command(name="install", aliases=["update"])
        @self._tier_check(TIER_INSTALL)
        async def install_cmd(ctx: commands.Context, build: str = "") -> None:
            if self.installer.install_in_progress():
                await ctx.send("Process running. Please wait.")
                return
            if not self.installer.confirm():
                await ctx.send(
                    "All running servers will be shutdown to install a build. "
                    "Repeat the command within 15 seconds to confirm."
                )
                return
            if not build:
                await ctx.send("You must enter the build hash you want to install, or `-l` for the latest.")
                return

            async def progress(text: str) -> None:
                await ctx.send(text)

            result = await self.installer.install(build, progress, self.send_announcement)
            self.logger.log("command.install", actor_id=ctx.author.id, build=build, ok=result.ok)
            await ctx.send(result.message)

    async def run_scenario(self, args: CommandArgs) -> str:
        if self.installer.install_in_progress():
            return "Cannot run server at this time. Installing new OpenRCT2 build."
        slot = args.slot or 1
        server_dir = self.files.server_dir(slot)
        if server_dir is None:
            return f"Server #{slot} folder doesn't exist."
        headless = args.has("h")

        if args.has("a"):
            try:
                loaded = self.processes.launch(AUTOSAVE, slot, server_dir, headless)
            except ConfigReadError as exc:
                return f"Server #{slot} is not configured properly: {exc}"
            if not loaded:
                return f"No autosaves found for Server #{slot}."
            await self.send_alert(f"Now resuming last autosave on Server #{slot}!")
            return f"Starting up last autosave on Server #{slot}."

        if args.has("r"):
            picked = self.files.random_scenario()
            results = [picked] if picked else []
        elif not args.text:
            return "You must specify a scenario to run."
        else:
            results = self.files.list_scenarios(args.text)
        if len(results) > 1:
            listed = "\n".join(results[:MAX_LISTED_SCENARIOS])
            return f"'{args.text}' returned multiple scenarios:\n\n{listed}\n\nPlease enter a more exact name."
        if not results:
            return f"No scenario found with '{args.text}'."
        try:
            loaded = self.processes.launch(results[0], slot, server_dir, headless)
        except ConfigReadError as exc:
            return f"Server #{slot} is not configured properly: {exc}"
        await self.send_alert(f"Now running **{loaded}** on Server #{slot}!")
        return f"Starting up **{loaded}** on Server #{slot}."

    def configure_server(self, raw: str) -> str:
        """``config [slot]`` shows a server's settings; ``config [slot] <setting> <value>`` edits one."""
        text = raw.strip()
        slot = 1
        head, _, rest = text.partition(" ")
        if head.isdigit():
            slot = int(head)
            text = rest.strip()
        try:
            server = self.server_config.ensure_server_dir(slot)
        except (ConfigReadError, OSError) as exc:
            return f"Could not prepare Server #{slot}: {exc}"
        created = f"Created folder `{server.path.name}` for Server #{slot}.\n\n" if server.created else ""
        if not text:
            return created + format_config(slot, self.server_config.show(server.path))
        search, value = split_setting(text)
        key = resolve_key(search)
        if key is None:
            return f"{created}No setting found with '{search}'."
        try:
            written = self.server_config.set_value(server.path, key, value)
        except (ConfigValueError, ConfigReadError) as exc:
            return f"{created}{exc}"
        except OSError as exc:
            return f"{created}Could not write config.ini for Server #{slot}: {exc}"
        return f"{created}Successfully set **{setting_label(key)}** to *{written}* for Server #{slot}."

    async def finish_vote(
        self,
        reaction_counts: dict[str, int],
        announce: Callable[[str], Awaitable[object]],
        delay_sec: float = CHANGE_DELAY_SEC,
    ) -> str | None:
        """Tally a closed vote and run the winner on the primary server. Returns the scenario stem."""
        outcome = self.voting.tally(reaction_counts)
        self.voting.close()
        if outcome.scenario is None:
            await announce("Scenario change cancelled. No votes were submitted!")
            return None
        stem = Path(outcome.scenario).stem
        if outcome.tie:
            headline = f"There was a tie! Randomly picked: **{stem}** ({outcome.votes} votes)"
        else:
            headline = f"Selected scenario: **{stem}** ({outcome.votes} votes)"
        await announce(f"{headline}\n\nMap change in {delay_sec:g} seconds.")
        await asyncio.sleep(delay_sec)
        reply = await self.run_scenario(CommandArgs(slot=1, text=stem))
        self.logger.log("command.vote_finished", scenario=stem, votes=outcome.votes, tie=outcome.tie)
        await announce(reply)
        return stem

    async def _collect_votes(self, ballot: discord.Message) -> None:
        await asyncio.sleep(VOTE_WINDOW_SEC)
        try:
            ballot = await ballot.channel.fetch_message(ballot.id)
        except discord.HTTPException as exc:
            self.logger.log("command.vote_failed", error=str(exc)[:300])
            self.voting.close()
            return
        counts = {str(reaction.emoji): reaction.count for reaction in ballot.reactions}
        await self.finish_vote(counts, ballot.channel.send)

    def _cancel_vote_task(self) -> None:
        if self._vote_task is not None and not self._vote_task.done():
            self._vote_task.cancel()
        self._vote_task = None

    def start_checker(self, args: CommandArgs) -> CheckerReply:
        target = _checker_target(args)
        if target is None:
            return CheckerReply(False, "You must provide the type of checker: `-d`, `-l` or `-s <server>`.")
        if target == "server":
            return self.supervisor.start_server_checker(args.slot or 1, args.interval_sec)
        return self.supervisor.start_build_checker(target, args.interval_sec)

    def stop_checker(self, args: CommandArgs) -> CheckerReply:
        target = _checker_target(args)
        if target is None:
            return CheckerReply(False, "You must provide the type of checker to stop.")
        if target == "server":
            return self.supervisor.stop_server_checker(args.slot or 1)
        return self.supervisor.stop_build_checker(target)

    def status_summary(self) -> str:
        uptime = datetime.now(tz=timezone.utc) - self.started_at
        running = self.processes.list_running()
        lines = [
            f"Uptime: `{uptime}`",
            f"Running servers: `{', '.join(f'#{slot}' for slot in running) or 'none'}`",
            f"Build checkers: `{', '.join(self.supervisor.active_build_checkers()) or 'none'}`",
        ]
        hashes = self.botdata.all()
        lines.append(
            f"Last seen builds: dev `{hashes.get('curdevhash') or '-'}` "
            f"launcher `{hashes.get('curlauncherhash') or '-'}`"
        )
        for slot in self.supervisor.watched_slots():
            lines.append(
                f"Server #{slot}: `{self.supervisor.health_state(slot)}` "
                f"failures=`{self.supervisor.failure_count(slot)}`"
            )
        if self.installer.install_in_progress():
            lines.append("Installation in progress.")
        return "\n".join(lines)

    async def _send_build_details(self, ctx: commands.Context, tag: str) -> None:
        try:
            details = await self.builds.fetch_details(tag)
        except BuildFeedError as exc:
            self.logger.log("command.build_details_failed", feed=tag, error=str(exc)[:300])
            await ctx.send("Could not find details about that build.")
            return
        await ctx.send(f"{details}\n{self.builds.feed_uri(tag)}"[:1900])

    async def send_alert(self, text: str) -> None:
        await self._send_to_channel(self.settings.alert_channel_id, text)

    async def send_announcement(self, text: str) -> None:
        await self._send_to_channel(self.settings.main_channel_id or self.settings.alert_channel_id, text)

    async def _send_to_channel(self, channel_id: int, text: str) -> None:
        channel = await resolve_text_channel(self, channel_id)
        if channel is None:
            print(f"[parkwarden] no channel {channel_id} for: {text}")
            return
        try:
            await channel.send(text[:1900])
        except discord.HTTPException as exc:
            print(f"[parkwarden] send to {channel_id} failed: {exc}")

    async def on_ready(self) -> None:
        if self._ready_once:
            return
        self._ready_once = True
        self.logger.log("bot.ready", user_id=self.user.id if self.user else None, guilds=len(self.guilds))
        print(f"Connected as {self.user} ({self.user.id if self.user else '?'})")

    async def on_command_error(self, ctx: commands.Context, exception: Exception) -> None:
        if isinstance(exception, commands.CommandNotFound):
            return
        if isinstance(exception, commands.CheckFailure):
            await ctx.send("Not authorized.")
            return
        if isinstance(exception, commands.UserInputError):
            await ctx.send(f"Invalid input: {exception}")
            return
        self.logger.log("command.error", error=str(exception)[:300], command=ctx.command.name if ctx.command else "unknown")
        await ctx.send(f"Command error: {exception}")

    def _on_log_row(self, row: dict[str, object]) -> None:
        event = str(row.get("event", ""))
        if not event.startswith(FORWARDED_LOG_PREFIXES):
            return
        if not self._ready_once or not self.settings.log_channel_id:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        loop.create_task(self._send_to_channel(self.settings.log_channel_id, _format_log_payload(row)))


def _checker_target(args: CommandArgs) -> str | None:
    text = args.text.lower()
    if args.has("d") or text.startswith("dev"):
        return "dev"
    if args.has("l") or text == "lnc" or text.startswith("lau"):
        return "launcher"
    if args.has("s") or args.slot is not None:
        return "server"
    return None


def _format_log_payload(row: dict[str, object]) -> str:
    ts = str(row.get("ts", ""))
    event = str(row.get("event", "unknown"))
    data = row.get("data", {})
    if isinstance(data, dict):
        compact = json.dumps(data, ensure_ascii=True, separators=(",", ":"), default=str)
    else:
        compact = str(data)
    return f"[{ts}] {event} {compact}"[:1900]


def main() -> None:
    settings = Settings.load()
    bot = ParkBot(settings)
    bot.run(settings.discord_token)
