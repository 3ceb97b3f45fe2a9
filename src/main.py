"""
MrLarbin - Main Application

A DLive chat bot that relays messages into a streamer's chat and answers
``!command`` triggers. The FastAPI app handles the OAuth redirect flow and a
small JSON admin surface for the command table.
"""

import html
import json
import logging
import urllib.parse
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import HTMLResponse, PlainTextResponse, RedirectResponse
from pydantic import BaseModel

from commands import CommandResponder, CommandTable
from config import Config, ConfigurationError, setup_logging
from dlive import ChatListener, DeliveryResult, DLiveGateway, GatewayError, schema_for_style
from tokens import (
    ExchangeFailedError,
    NoRefreshTokenError,
    RefreshRejectedError,
    TokenManager,
    build_token_store,
)

# Configure logging
logger = logging.getLogger(__name__)


class BotServices:
    """Wires the token manager, gateway, listener and command table together."""

    def __init__(self, config: Config, token_manager: TokenManager, gateway: DLiveGateway,
                 listener: ChatListener, commands: CommandTable):
        self.config = config
        self.token_manager = token_manager
        self.gateway = gateway
        self.listener = listener
        self.commands = commands

    async def startup(self) -> None:
        """Load persisted state and start listening when a credential exists."""
        await self.token_manager.load()
        self.commands.load()
        self.commands.seed_defaults()

        if not self.token_manager.has_credential:
            logger.info("Authorization required: open /auth/start to connect the bot")
            return
        await self.start_listener()

    async def shutdown(self) -> None:
        await self.listener.stop()

    async def resolve_target(self, display_name: Optional[str] = None) -> str:
        # The gateway caches successful lookups
        return await self.gateway.resolve_username(display_name or self.config.DLIVE_TARGET_DISPLAYNAME)

    async def start_listener(self) -> bool:
        if not self.config.DLIVE_LISTENER_ENABLED:
            logger.info("Chat listener disabled by configuration")
            return False
        target = await self.resolve_target()
        responder = CommandResponder(
            self.commands,
            self.gateway,
            target,
            bot_username=self.config.DLIVE_BOT_USERNAME,
            prefix=self.config.COMMAND_PREFIX,
        )
        return await self.listener.start(target, responder)

    async def send(self, display_name: str, message: str) -> DeliveryResult:
        target = await self.resolve_target(display_name)
        return await self.gateway.send_message(target, message, role=self.config.DLIVE_CHAT_ROLE)

    def status(self) -> Dict[str, Any]:
        return {
            "listener": self.listener.describe(),
            "token": self.token_manager.describe(),
            "configuration": {
                "target_displayname": self.config.DLIVE_TARGET_DISPLAYNAME,
                "listener_enabled": self.config.DLIVE_LISTENER_ENABLED,
                "token_store": self.config.TOKEN_STORE,
                "commands": len(self.commands),
            },
        }


def build_services(config: Config) -> BotServices:
    """Create the bot components from configuration."""
    store = build_token_store(
        config.TOKEN_STORE,
        token_file=config.TOKEN_FILE,
        db_path=config.TOKEN_DB_PATH,
        env_file=config.TOKEN_ENV_FILE,
    )
    token_manager = TokenManager(
        config.DLIVE_CLIENT_ID,
        config.DLIVE_CLIENT_SECRET,
        config.DLIVE_REDIRECT_URI,
        store,
        token_url=config.DLIVE_TOKEN_URL,
        authorize_url=config.DLIVE_AUTHORIZE_URL,
        scopes=config.REQUIRED_DLIVE_SCOPES,
        timeout=config.HTTP_TIMEOUT_SECONDS,
        refresh_margin=config.TOKEN_REFRESH_MARGIN_SECONDS,
        default_lifetime=config.DEFAULT_TOKEN_LIFETIME_SECONDS,
    )
    gateway = DLiveGateway(
        token_manager,
        graphql_url=config.DLIVE_GRAPHQL_URL,
        schema=schema_for_style(config.DLIVE_MUTATION_STYLE, config.DLIVE_CHAT_ROLE),
        auth_scheme=config.DLIVE_AUTH_SCHEME,
        timeout=config.HTTP_TIMEOUT_SECONDS,
    )
    reconnect_delay, open_timeout = config.get_reconnect_config()
    listener = ChatListener(
        token_manager,
        ws_url=config.DLIVE_WS_URL,
        auth_scheme=config.DLIVE_AUTH_SCHEME,
        reconnect_delay=reconnect_delay,
        open_timeout=open_timeout,
    )
    commands = CommandTable(path=config.COMMANDS_FILE, prefix=config.COMMAND_PREFIX)
    return BotServices(config, token_manager, gateway, listener, commands)


def render_delivery(target: str, result: DeliveryResult) -> str:
    body = html.escape(json.dumps({"payload": result.payload, "response": result.response}, indent=2, default=str))
    return f"<html><body><h1>Message sent to {html.escape(target)}!</h1><pre>{body}</pre></body></html>"


def gateway_error_response(e: GatewayError) -> PlainTextResponse:
    return PlainTextResponse(
        f"GraphQL error (status {e.status}): {json.dumps(e.body, indent=2, default=str)}",
        status_code=502,
    )


class CommandBody(BaseModel):
    reply: str


def create_app(services: BotServices) -> FastAPI:
    """
    Build the FastAPI application around ``services``.

    Startup loads the credential and the command table and starts the chat
    listener; shutdown stops it.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await services.startup()
        try:
            yield
        finally:
            await services.shutdown()

    app = FastAPI(title="MrLarbin", version="1.0.0", lifespan=lifespan)
    app.state.services = services
    config = services.config

    @app.get("/", response_class=PlainTextResponse)
    async def root() -> str:
        return "OK - MrLarbin up"

    @app.get("/health")
    async def health_check() -> dict:
        return {
            "status": "healthy",
            "service": "mrlarbin",
            "version": "1.0.0",
            "timestamp": datetime.now().isoformat(),
        }

    @app.get("/status")
    async def bot_status() -> dict:
        return services.status()

    @app.get("/auth/start")
    async def auth_start(message: Optional[str] = None, to: Optional[str] = None) -> RedirectResponse:
        """Begin the OAuth flow. The message, or DLIVE_MESSAGE, is sent once authorization completes."""
        auth_url = services.token_manager.generate_auth_url(message=message or config.DLIVE_MESSAGE, target=to)
        return RedirectResponse(auth_url)

    @app.get("/send")
    async def send(msg: Optional[str] = None, message: Optional[str] = None, to: Optional[str] = None):
        """Send a chat message now, or go through authorization first when no credential is usable."""
        text = msg or message or config.DLIVE_MESSAGE
        target = to or config.DLIVE_TARGET_DISPLAYNAME
        try:
            result = await services.send(target, text)
        except (NoRefreshTokenError, RefreshRejectedError) as e:
            logger.info(f"Authorization needed before sending: {e}")
            query = urllib.parse.urlencode({"message": text, "to": target})
            return RedirectResponse(f"/auth/start?{query}")
        except ExchangeFailedError as e:
            return PlainTextResponse(f"Token refresh failed: {e.body}", status_code=502)
        except GatewayError as e:
            return gateway_error_response(e)
        return HTMLResponse(render_delivery(target, result))

    @app.get("/oauth/callback")
    async def oauth_callback(request: Request):
        """Exchange the authorization code, then deliver any message carried by the state."""
        code = request.query_params.get("code")
        state = request.query_params.get("state")
        error = request.query_params.get("error")

        if error:
            logger.error(f"OAuth error: {error}")
            return PlainTextResponse(f"Authorization failed: {error}", status_code=400)
        if not code:
            return PlainTextResponse("Missing code", status_code=400)

        pending: Dict[str, Any] = {}
        if state:
            try:
                pending = services.token_manager.consume_state(state)
            except ValueError as e:
                logger.warning(f"OAuth callback with bad state: {e}")
                return PlainTextResponse(str(e), status_code=400)

        try:
            await services.token_manager.complete_authorization(code)
        except ExchangeFailedError as e:
            return PlainTextResponse(f"Token exchange failed: {e.body}", status_code=502)

        await services.start_listener()

        if not pending.get("message"):
            return HTMLResponse("<html><body><h1>MrLarbin is authorized.</h1></body></html>")

        target = pending.get("target") or config.DLIVE_TARGET_DISPLAYNAME
        try:
            result = await services.send(target, pending["message"])
        except GatewayError as e:
            return gateway_error_response(e)
        return HTMLResponse(render_delivery(target, result))

    @app.get("/commands")
    async def list_commands() -> dict:
        return {"commands": services.commands.as_dict()}

    @app.put("/commands/{name}")
    async def set_command(name: str, body: CommandBody) -> dict:
        try:
            trigger = services.commands.set(name, body.reply)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        return {"trigger": trigger, "reply": body.reply}

    @app.delete("/commands/{name}")
    async def delete_command(name: str) -> dict:
        try:
            removed = services.commands.remove(name)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        if not removed:
            raise HTTPException(status_code=404, detail="Command not found")
        return {"removed": name}

    return app


def main() -> None:
    """
    Main function to run the bot.

    This function validates configuration, builds the bot services and runs
    the FastAPI server, which starts the chat listener on startup.
    """
    try:
        config = Config()
    except ConfigurationError as e:
        setup_logging()
        logger.error(f"Configuration error: {e}")
        return
    setup_logging(config.LOG_LEVEL, config.LOG_FILE)

    logger.info("Starting MrLarbin")
    app = create_app(build_services(config))
    host, port = config.get_fastapi_config()
    uvicorn.run(app, host=host, port=port, log_level="warning")


if __name__ == "__main__":
    main()
