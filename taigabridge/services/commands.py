"""Telegram command, callback and wizard handling.

``BridgeBot.handle_update`` is the single entry point for webhook updates.
Handlers return the reply text; domain errors raised anywhere below are
turned into replies by ``_reply_for_error`` so the webhook always succeeds.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Protocol

from taigabridge.errors import (
    AuthorizationError,
    BridgeError,
    NotFoundError,
    PermissionCheckError,
    PersistenceError,
    RemoteAPIError,
    ValidationError,
)
from taigabridge.schemas.link import UserLink
from taigabridge.schemas.telegram import (
    InlineKeyboardButton,
    InlineKeyboardMarkup,
    TelegramCallbackQuery,
    TelegramMessage,
    TelegramUpdate,
    TelegramUser,
)
from taigabridge.services.clients import TaigaClientFactory
from taigabridge.services.link_store import LinkStore
from taigabridge.services.telegram_formatter import (
    HELP_TEXT,
    format_mappings,
    format_projects,
    format_stories,
    format_watches,
)
from taigabridge.services.wizard import WizardSessions
from taigabridge.types.wizard import (
    CancelWizard,
    ChooseAssignee,
    ChooseProject,
    InvalidCallback,
    assignee_button_data,
    cancel_button_data,
    decode_callback,
    project_button_data,
)
from taigabridge.utils.parsing import (
    StoryRequest,
    parse_chat_id,
    parse_optional_project_id,
    parse_positive_int,
    parse_required_project_id,
    parse_task_to,
    parse_task_with_optional_assignee,
    split_command,
    split_subject_description,
)

logger = logging.getLogger(__name__)

NOT_LINKED = "No link. Use /link <taiga_token> first."
GENERIC_ERROR = "Something went wrong on my end. Try again in a moment."
WIZARD_TEXT_PROMPT = "Send the subject and optional description as: Subject | description"


class ChatTransport(Protocol):
    async def send_text(self, chat_id: int, text: str) -> None: ...

    async def send_keyboard(self, chat_id: int, text: str, markup: InlineKeyboardMarkup) -> None: ...

    async def answer_callback(self, callback_query_id: str, text: str | None = None) -> None: ...

    async def delete_message(self, chat_id: int, message_id: int) -> None: ...


CommandHandler = Callable[[TelegramMessage, str], Awaitable[str | None]]


def _reply_for_error(error: BridgeError) -> str:
    if isinstance(error, NotFoundError):
        return NOT_LINKED
    if isinstance(error, AuthorizationError):
        return f"Not enough rights: {error.message}"
    if isinstance(error, PermissionCheckError):
        return f"Permission check failed: {error.message}"
    if isinstance(error, RemoteAPIError):
        return f"Taiga error: {error.message}"
    if isinstance(error, PersistenceError):
        return f"Failed to save: {error.message}"
    return error.message


class BridgeBot:
    """Routes Telegram updates to command handlers."""

    def __init__(
        self,
        store: LinkStore,
        clients: TaigaClientFactory,
        transport: ChatTransport,
        wizards: WizardSessions | None = None,
    ) -> None:
        self.store = store
        self.clients = clients
        self.transport = transport
        self.wizards = wizards if wizards is not None else WizardSessions()
        self._commands: dict[str, CommandHandler] = {
            "start": self.cmd_help,
            "help": self.cmd_help,
            "link": self.cmd_link,
            "me": self.cmd_me,
            "unlink": self.cmd_unlink,
            "projects": self.cmd_projects,
            "my": self.cmd_my,
            "task": self.cmd_task,
            "taskto": self.cmd_taskto,
            "new": self.cmd_new,
            "cancel": self.cmd_cancel,
            "notifyhere": self.cmd_notify_here,
            "notifychat": self.cmd_notify_chat,
            "notifypm": self.cmd_notify_pm,
            "watch": self.cmd_watch,
            "unwatch": self.cmd_unwatch,
            "watches": self.cmd_watches,
            "map": self.cmd_map,
            "mapid": self.cmd_map_id,
            "mappings": self.cmd_mappings,
            "adminlinkid": self.cmd_admin_link_id,
        }

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def handle_update(self, update: TelegramUpdate) -> None:
        self.wizards.prune()
        if update.message is not None:
            self._remember_sender(update.message.from_user)
            await self.handle_message(update.message)
        elif update.callback_query is not None:
            self._remember_sender(update.callback_query.from_user)
            await self.handle_callback(update.callback_query)

    async def handle_message(self, message: TelegramMessage) -> None:
        text = (message.text or "").strip()
        if not text or message.from_user is None:
            return

        name, args = split_command(text)
        if not name:
            await self._run(message.chat.id, self.handle_wizard_text(message, text))
            return

        handler = self._commands.get(name)
        if handler is None:
            if message.chat.is_private:
                await self.transport.send_text(message.chat.id, "Unknown command. Use /help.")
            return

        logger.info("Command /%s from user %s in chat %s", name, message.from_user.id, message.chat.id)
        await self._run(message.chat.id, handler(message, args))

    async def _run(self, chat_id: int, pending: Awaitable[str | None]) -> None:
        try:
            reply = await pending
        except BridgeError as e:
            logger.info("Command failed in chat %s: %s", chat_id, e)
            reply = _reply_for_error(e)
        except Exception:
            logger.exception("Unhandled error while handling command in chat %s", chat_id)
            reply = GENERIC_ERROR
        if reply:
            await self.transport.send_text(chat_id, reply)

    def _remember_sender(self, user: TelegramUser | None) -> None:
        if user is None or not user.username:
            return
        try:
            self.store.upsert_username(user.username, user.id)
        except BridgeError as e:
            logger.warning("Could not record username for %s: %s", user.id, e)

    def _require_link(self, telegram_id: int) -> UserLink:
        link = self.store.get(telegram_id)
        if link is None:
            raise NotFoundError("Link", telegram_id)
        return link

    def _resolve_telegram_target(self, raw: str) -> int:
        raw = raw.strip()
        if raw.startswith("@"):
            telegram_id = self.store.resolve_handle(raw)
            if telegram_id is None:
                raise ValidationError(
                    f"Unknown username {raw}: the user has to write to the bot or a shared chat first"
                )
            return telegram_id
        try:
            telegram_id = int(raw)
        except ValueError:
            raise ValidationError("Invalid Telegram user id") from None
        if telegram_id == 0:
            raise ValidationError("Invalid Telegram user id")
        return telegram_id

    async def _require_project_admin(self, telegram_id: int, project_id: int) -> None:
        """Raise unless the user administers ``project_id`` in Taiga."""
        link = self.store.get(telegram_id)
        if link is None:
            raise PermissionCheckError("your Telegram account is not linked to Taiga")
        try:
            memberships = await self.clients.for_link(link).list_memberships(project_id)
        except BridgeError as e:
            raise PermissionCheckError(e.message) from e

        for membership in memberships:
            if membership.user_id == link.taiga_user_id:
                if membership.can_administer:
                    return
                break
        raise AuthorizationError(f"Taiga admin rights in project {project_id} are required")

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    async def cmd_help(self, message: TelegramMessage, args: str) -> str:
        return HELP_TEXT

    async def cmd_link(self, message: TelegramMessage, args: str) -> str:
        parts = args.split()
        if not parts:
            return "Usage: /link <taiga_token> [refresh_token]"
        token = parts[0]
        refresh_token = parts[1] if len(parts) > 1 else None

        try:
            me = await self.clients.for_token(token, refresh_token).get_me()
            self.store.save(
                UserLink(
                    telegram_id=message.from_user.id,
                    taiga_token=token,
                    taiga_refresh_token=refresh_token,
                    taiga_user_id=me.id,
                    taiga_user_name=me.full_name,
                )
            )
        finally:
            await self.transport.delete_message(message.chat.id, message.message_id)

        logger.info("Linked Telegram user %s to Taiga user %s", message.from_user.id, me.id)
        return f"Linked to Taiga user: {me.full_name} ({me.id})"

    async def cmd_me(self, message: TelegramMessage, args: str) -> str:
        link = self._require_link(message.from_user.id)
        return f"Taiga user: {link.taiga_user_name} ({link.taiga_user_id})"

    async def cmd_unlink(self, message: TelegramMessage, args: str) -> str:
        self.store.delete(message.from_user.id)
        self.wizards.clear(message.from_user.id)
        return "Unlinked"

    # ------------------------------------------------------------------
    # Read-only Taiga views
    # ------------------------------------------------------------------

    async def cmd_projects(self, message: TelegramMessage, args: str) -> str:
        link = self._require_link(message.from_user.id)
        projects = await self.clients.for_link(link).list_projects()
        if not projects:
            return "No projects"
        return format_projects(projects)

    async def cmd_my(self, message: TelegramMessage, args: str) -> str:
        project_id = parse_optional_project_id(args)
        link = self._require_link(message.from_user.id)
        stories = await self.clients.for_link(link).list_user_stories(
            project_id=project_id, assigned_to=link.taiga_user_id
        )
        if not stories:
            return "No user stories"
        return format_stories(stories)

    # ------------------------------------------------------------------
    # Story creation
    # ------------------------------------------------------------------

    async def cmd_task(self, message: TelegramMessage, args: str) -> str:
        request = parse_task_with_optional_assignee(args)
        link = self._require_link(message.from_user.id)
        if request.assignee_id is None:
            request = StoryRequest(
                request.project_id, request.subject, request.description, link.taiga_user_id or None
            )
        return await self._create_story(link, request)

    async def cmd_taskto(self, message: TelegramMessage, args: str) -> str:
        request = parse_task_to(args)
        link = self._require_link(message.from_user.id)
        return await self._create_story(link, request)

    async def _create_story(self, link: UserLink, request: StoryRequest) -> str:
        story = await self.clients.for_link(link).create_user_story(
            request.project_id,
            request.subject,
            description=request.description or None,
            assigned_to=request.assignee_id,
        )
        logger.info("User %s created story %s in project %s", link.telegram_id, story.id, request.project_id)
        return f"Created user story #{story.ref}: {story.subject}"

    # ------------------------------------------------------------------
    # Wizard
    # ------------------------------------------------------------------

    async def cmd_new(self, message: TelegramMessage, args: str) -> str | None:
        link = self._require_link(message.from_user.id)
        projects = await self.clients.for_link(link).list_projects()
        if not projects:
            return "No projects"

        rows = [
            [InlineKeyboardButton(text=p.name, callback_data=project_button_data(p.id))]
            for p in projects
        ]
        rows.append([InlineKeyboardButton(text="Cancel", callback_data=cancel_button_data())])
        await self.transport.send_keyboard(
            message.chat.id, "Choose a project:", InlineKeyboardMarkup(inline_keyboard=rows)
        )
        return None

    async def cmd_cancel(self, message: TelegramMessage, args: str) -> str:
        if self.wizards.clear(message.from_user.id):
            return "Cancelled"
        return "Nothing to cancel"

    async def handle_wizard_text(self, message: TelegramMessage, text: str) -> str | None:
        """Consume plain text as the story subject of an active wizard."""
        state = self.wizards.awaiting_text(message.from_user.id)
        if state is None:
            return None

        subject, description = split_subject_description(text)
        if not subject:
            return "Subject is required. " + WIZARD_TEXT_PROMPT

        link = self._require_link(message.from_user.id)
        reply = await self._create_story(
            link, StoryRequest(state.project_id, subject, description, state.assignee_id)
        )
        self.wizards.clear(message.from_user.id)
        return reply

    async def handle_callback(self, query: TelegramCallbackQuery) -> None:
        action = decode_callback(query.data)
        if action is None:
            await self.transport.answer_callback(query.id)
            return
        if query.message is None:
            await self.transport.answer_callback(query.id, "Message is no longer available")
            return

        chat_id = query.message.chat.id
        user_id = query.from_user.id

        if isinstance(action, InvalidCallback):
            await self.transport.answer_callback(query.id, action.reason)
            return

        await self.transport.delete_message(chat_id, query.message.message_id)

        if isinstance(action, CancelWizard):
            self.wizards.clear(user_id)
            await self.transport.answer_callback(query.id, "Cancelled")
            await self.transport.send_text(chat_id, "Cancelled")
        elif isinstance(action, ChooseProject):
            await self._offer_assignees(query, chat_id, user_id, action.project_id)
        elif isinstance(action, ChooseAssignee):
            self.wizards.choose_assignee(user_id, action.project_id, action.assignee_id)
            await self.transport.answer_callback(query.id, "OK")
            await self.transport.send_text(chat_id, WIZARD_TEXT_PROMPT)

    async def _offer_assignees(
        self,
        query: TelegramCallbackQuery,
        chat_id: int,
        user_id: int,
        project_id: int,
    ) -> None:
        link = self.store.get(user_id)
        if link is None:
            await self.transport.answer_callback(query.id, "No link")
            await self.transport.send_text(chat_id, NOT_LINKED)
            return

        try:
            memberships = await self.clients.for_link(link).list_memberships(project_id)
        except BridgeError as e:
            logger.warning("Member list failed for project %s: %s", project_id, e)
            await self.transport.answer_callback(query.id, "Error")
            await self.transport.send_text(chat_id, f"Failed to fetch project members: {e.message}")
            return

        self.wizards.choose_project(user_id, project_id)
        members = sorted(
            (m for m in memberships if m.user_id),
            key=lambda m: (m.full_name.lower(), m.user_id),
        )
        rows = [[InlineKeyboardButton(text="No assignee", callback_data=assignee_button_data(project_id, None))]]
        rows.extend(
            [InlineKeyboardButton(text=m.full_name or str(m.user_id), callback_data=assignee_button_data(project_id, m.user_id))]
            for m in members
        )
        rows.append([InlineKeyboardButton(text="Cancel", callback_data=cancel_button_data())])

        await self.transport.answer_callback(query.id, "OK")
        await self.transport.send_keyboard(
            chat_id, "Choose an assignee:", InlineKeyboardMarkup(inline_keyboard=rows)
        )

    # ------------------------------------------------------------------
    # Notification routing
    # ------------------------------------------------------------------

    async def cmd_notify_here(self, message: TelegramMessage, args: str) -> str:
        self.store.set_notify_destination(message.from_user.id, message.chat.id)
        return f"Notifications will be sent to this chat ({message.chat.id})"

    async def cmd_notify_chat(self, message: TelegramMessage, args: str) -> str:
        chat_id = parse_chat_id(args)
        self.store.set_notify_destination(message.from_user.id, chat_id)
        return f"Notifications will be sent to chat {chat_id}"

    async def cmd_notify_pm(self, message: TelegramMessage, args: str) -> str:
        self.store.set_notify_destination(message.from_user.id, None)
        return "Notifications will be sent to your private chat"

    async def cmd_watch(self, message: TelegramMessage, args: str) -> str:
        project_id = parse_required_project_id(args)
        self.store.add_watched_project(message.from_user.id, project_id)
        return f"Watching project {project_id}"

    async def cmd_unwatch(self, message: TelegramMessage, args: str) -> str:
        project_id = parse_required_project_id(args)
        self.store.remove_watched_project(message.from_user.id, project_id)
        return f"Stopped watching project {project_id}"

    async def cmd_watches(self, message: TelegramMessage, args: str) -> str:
        link = self._require_link(message.from_user.id)
        if not link.watched_projects:
            return "No watched projects"
        return format_watches(link.watched_projects)

    # ------------------------------------------------------------------
    # Admin commands
    # ------------------------------------------------------------------

    async def cmd_map(self, message: TelegramMessage, args: str) -> str:
        usage = "Usage: reply to a user's message with /map <project_id> <taiga_user_id>"
        parts = args.split()
        reply_to = message.reply_to_message
        if len(parts) != 2 or reply_to is None or reply_to.from_user is None:
            return usage
        project_id = parse_required_project_id(parts[0])
        taiga_user_id = parse_positive_int(parts[1], "Invalid Taiga user id")

        await self._require_project_admin(message.from_user.id, project_id)
        self.store.set_mapping(project_id, reply_to.from_user.id, taiga_user_id)
        return f"Mapped Telegram {reply_to.from_user.id} -> Taiga {taiga_user_id} in project {project_id}"

    async def cmd_map_id(self, message: TelegramMessage, args: str) -> str:
        parts = args.split()
        if len(parts) != 3:
            return "Usage: /mapid <project_id> <telegram_user_id|@username> <taiga_user_id>"
        project_id = parse_required_project_id(parts[0])
        target = self._resolve_telegram_target(parts[1])
        taiga_user_id = parse_positive_int(parts[2], "Invalid Taiga user id")

        await self._require_project_admin(message.from_user.id, project_id)
        self.store.set_mapping(project_id, target, taiga_user_id)
        return f"Mapped Telegram {target} -> Taiga {taiga_user_id} in project {project_id}"

    async def cmd_mappings(self, message: TelegramMessage, args: str) -> str:
        project_id = parse_required_project_id(args)
        await self._require_project_admin(message.from_user.id, project_id)
        mappings = self.store.list_mappings(project_id)
        if not mappings:
            return f"No mappings for project {project_id}"
        return format_mappings(project_id, mappings)

    async def cmd_admin_link_id(self, message: TelegramMessage, args: str) -> str:
        if not message.chat.is_private:
            await self.transport.delete_message(message.chat.id, message.message_id)
            return "This command only works in a private chat with the bot"

        try:
            parts = args.split()
            if len(parts) != 3:
                return "Usage: /adminlinkid <project_id> <telegram_user_id|@username> <taiga_token>"
            project_id = parse_required_project_id(parts[0])
            target = self._resolve_telegram_target(parts[1])
            token = parts[2]

            await self._require_project_admin(message.from_user.id, project_id)
            me = await self.clients.for_token(token).get_me()
            self.store.save(
                UserLink(
                    telegram_id=target,
                    taiga_token=token,
                    taiga_user_id=me.id,
                    taiga_user_name=me.full_name,
                )
            )
        finally:
            await self.transport.delete_message(message.chat.id, message.message_id)

        logger.info("Admin %s linked Telegram user %s to Taiga user %s", message.from_user.id, target, me.id)
        return f"Saved link: Telegram {target} -> Taiga {me.full_name} ({me.id})"
