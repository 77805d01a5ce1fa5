"""LSP over stdio: framing, an asyncio client, and a completion backend.

The client speaks just enough of the protocol for completion: initialize,
full-text document sync, completion, resolve, signature help, and
`$/cancelRequest` when a caller stops waiting. Cancellation is advisory; a
reply that shows up after its request was abandoned is dropped here.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any, Callable, Sequence

from twostep.exceptions import (
    BackendUnavailable,
    LspProtocolError,
    MalformedResponse,
    TwostepError,
)
from twostep.models import (
    CompletionItem,
    CompletionResult,
    ParameterInfo,
    Position,
    SignatureHelp,
    SignatureInfo,
    TriggerContext,
    TriggerKind,
)

logger = logging.getLogger(__name__)

COMPLETION_KINDS: dict[int, str] = {
    1: "Text", 2: "Method", 3: "Function", 4: "Constructor", 5: "Field",
    6: "Variable", 7: "Class", 8: "Interface", 9: "Module", 10: "Property",
    11: "Unit", 12: "Value", 13: "Enum", 14: "Keyword", 15: "Snippet",
    16: "Color", 17: "File", 18: "Reference", 19: "Folder", 20: "EnumMember",
    21: "Constant", 22: "Struct", 23: "Event", 24: "Operator", 25: "TypeParameter",
}

SNIPPET_FORMAT = 2
_SNIPPET_PLACEHOLDER = re.compile(r"\$\{\d+:([^}]*)\}")
_SNIPPET_TABSTOP = re.compile(r"\$\{\d+\}|\$\d+")


# ── Framing ──────────────────────────────────────────────────────────────


_CONTENT_LENGTH = re.compile(rb"^content-length:[ \t]*(\d+)[ \t]*\r?$", re.IGNORECASE | re.MULTILINE)


def encode_message(payload: dict[str, Any]) -> bytes:
    """Frame one JSON-RPC payload for the server's stdin."""
    body = json.dumps(payload, ensure_ascii=False, separators=(",", ":")).encode()
    return b"Content-Length: %d\r\n\r\n%s" % (len(body), body)


class MessageParser:
    """Reassembles JSON-RPC messages from arbitrary stdout chunks."""

    def __init__(self) -> None:
        self._data = bytearray()
        self._body_length: int | None = None

    def reset(self) -> None:
        self._data.clear()
        self._body_length = None

    def feed(self, chunk: bytes) -> list[dict[str, Any]]:
        self._data += chunk
        decoded = [self._decode(body) for body in self._bodies()]
        return [m for m in decoded if isinstance(m, dict)]

    def _bodies(self):
        while True:
            if self._body_length is None:
                head, sep, _ = self._data.partition(b"\r\n\r\n")
                if not sep:
                    return
                del self._data[: len(head) + len(sep)]
                match = _CONTENT_LENGTH.search(head)
                if match is None:
                    logger.debug(f"dropping frame header {bytes(head)!r}")
                    continue
                self._body_length = int(match.group(1))
            if len(self._data) < self._body_length:
                return
            body = bytes(self._data[: self._body_length])
            del self._data[: self._body_length]
            self._body_length = None
            yield body

    @staticmethod
    def _decode(body: bytes) -> Any:
        try:
            return json.loads(body)
        except (UnicodeDecodeError, json.JSONDecodeError):
            logger.debug("skipping undecodable frame")
            return None


# ── Client ───────────────────────────────────────────────────────────────


class LspClient:
    """JSON-RPC client for a language server child process."""

    def __init__(
        self,
        command: Sequence[str],
        *,
        root_uri: str | None = None,
        initialization_options: dict[str, Any] | None = None,
    ) -> None:
        if not command:
            raise ValueError("language server command is empty")
        self.command = list(command)
        self.root_uri = root_uri
        self.initialization_options = initialization_options or {}
        self.server_capabilities: dict[str, Any] = {}
        self._proc: asyncio.subprocess.Process | None = None
        self._reader: asyncio.Task | None = None
        self._parser = MessageParser()
        self._pending: dict[int, asyncio.Future] = {}
        self._next_id = 1

    @property
    def running(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    async def start(self) -> dict[str, Any]:
        """Spawn the server and complete the initialize handshake."""
        try:
            self._proc = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            raise BackendUnavailable(f"cannot start {self.command[0]!r}: {e}", cause=e)
        self._parser.reset()
        self._reader = asyncio.create_task(self._read_loop(), name="lsp:reader")
        result = await self.request("initialize", {
            "processId": None,
            "rootUri": self.root_uri,
            "clientInfo": {"name": "twostep"},
            "initializationOptions": self.initialization_options,
            "capabilities": {
                "textDocument": {
                    "synchronization": {"didSave": False},
                    "completion": {
                        "completionItem": {
                            "snippetSupport": False,
                            "documentationFormat": ["markdown", "plaintext"],
                            "resolveSupport": {"properties": ["detail", "documentation"]},
                        },
                    },
                    "signatureHelp": {
                        "signatureInformation": {
                            "documentationFormat": ["markdown", "plaintext"],
                            "parameterInformation": {"labelOffsetSupport": True},
                        },
                    },
                },
            },
        })
        self.server_capabilities = (result or {}).get("capabilities", {})
        self.notify("initialized", {})
        logger.debug(f"{self.command[0]} initialized")
        return self.server_capabilities

    async def request(self, method: str, params: Any) -> Any:
        if not self.running:
            raise BackendUnavailable("language server is not running")
        request_id = self._next_id
        self._next_id += 1
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        self._send({"jsonrpc": "2.0", "id": request_id, "method": method, "params": params})
        try:
            return await future
        except asyncio.CancelledError:
            if self._pending.pop(request_id, None) is not None and self.running:
                self.notify("$/cancelRequest", {"id": request_id})
            raise

    def notify(self, method: str, params: Any) -> None:
        if not self.running:
            raise BackendUnavailable("language server is not running")
        self._send({"jsonrpc": "2.0", "method": method, "params": params})

    def _send(self, payload: dict[str, Any]) -> None:
        self._proc.stdin.write(encode_message(payload))

    async def _read_loop(self) -> None:
        try:
            while True:
                data = await self._proc.stdout.read(65536)
                if not data:
                    break
                for message in self._parser.feed(data):
                    self._dispatch(message)
        finally:
            self._fail_pending(BackendUnavailable("language server exited"))

    def _dispatch(self, message: dict[str, Any]) -> None:
        if "method" not in message:
            future = self._pending.pop(message.get("id"), None)
            if future is None or future.done():
                logger.debug(f"dropping reply to abandoned request {message.get('id')}")
                return
            error = message.get("error")
            if error is not None:
                future.set_exception(LspProtocolError(
                    str(error.get("message", "server error")),
                    code=error.get("code", 0),
                    data=error.get("data"),
                ))
            else:
                future.set_result(message.get("result"))
        elif "id" in message:
            # Server-to-client request: acknowledge with an empty result.
            self._send({"jsonrpc": "2.0", "id": message["id"], "result": None})
        elif message["method"] == "window/logMessage":
            logger.debug(f"server: {message.get('params', {}).get('message', '')}")

    def _fail_pending(self, error: Exception) -> None:
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(error)

    async def stop(self, timeout: float = 2.0) -> None:
        """shutdown/exit handshake, then make sure the process is gone."""
        if self._proc is None:
            return
        if self.running:
            try:
                await asyncio.wait_for(self.request("shutdown", None), timeout)
                self.notify("exit", None)
            except (TwostepError, TimeoutError):
                logger.debug("language server did not shut down cleanly")
        if self._proc.stdin is not None:
            self._proc.stdin.close()
        try:
            await asyncio.wait_for(self._proc.wait(), timeout)
        except TimeoutError:
            self._proc.kill()
            await self._proc.wait()
        if self._reader is not None:
            await asyncio.gather(self._reader, return_exceptions=True)
            self._reader = None


# ── Payload conversion ───────────────────────────────────────────────────


def _markup(value: Any) -> str | None:
    if isinstance(value, dict):
        return value.get("value") or None
    return value or None


def strip_snippet(text: str) -> str:
    return _SNIPPET_TABSTOP.sub("", _SNIPPET_PLACEHOLDER.sub(r"\1", text))


def item_from_lsp(raw: Any) -> CompletionItem:
    if not isinstance(raw, dict) or not isinstance(raw.get("label"), str):
        raise MalformedResponse("completion item without a label", payload=raw)
    edit = raw.get("textEdit") or {}
    edit_range = edit.get("range") or edit.get("insert")
    insert_text = edit.get("newText", raw.get("insertText"))
    if insert_text is not None and raw.get("insertTextFormat") == SNIPPET_FORMAT:
        insert_text = strip_snippet(insert_text)
    return CompletionItem(
        label=raw["label"],
        insert_text=insert_text,
        kind=COMPLETION_KINDS.get(raw.get("kind"), ""),
        sort_priority=-1 if raw.get("preselect") else 0,
        detail=raw.get("detail") or None,
        documentation=_markup(raw.get("documentation")),
        filter_text=raw.get("filterText"),
        sort_text=raw.get("sortText"),
        replace_start=edit_range["start"]["character"] if edit_range else None,
        data=raw,
    )


def result_from_lsp(raw: Any) -> CompletionResult:
    """CompletionItem[] | CompletionList | null -> CompletionResult."""
    if raw is None:
        return CompletionResult(generation=0)
    if isinstance(raw, list):
        return CompletionResult(generation=0, items=tuple(item_from_lsp(r) for r in raw))
    if isinstance(raw, dict) and isinstance(raw.get("items"), list):
        return CompletionResult(
            generation=0,
            items=tuple(item_from_lsp(r) for r in raw["items"]),
            is_complete=not raw.get("isIncomplete", False),
        )
    raise MalformedResponse("unexpected completion payload", payload=raw)


def signature_from_lsp(raw: Any) -> SignatureHelp | None:
    if raw is None:
        return None
    if not isinstance(raw, dict) or not isinstance(raw.get("signatures"), list):
        raise MalformedResponse("unexpected signature help payload", payload=raw)
    signatures = []
    for sig in raw["signatures"]:
        label = sig.get("label", "")
        params = []
        for param in sig.get("parameters") or []:
            plabel = param.get("label", "")
            if isinstance(plabel, list) and len(plabel) == 2:
                plabel = label[plabel[0]:plabel[1]]
            params.append(ParameterInfo(label=plabel, documentation=_markup(param.get("documentation"))))
        signatures.append(SignatureInfo(
            label=label,
            documentation=_markup(sig.get("documentation")),
            parameters=tuple(params),
            active_parameter=sig.get("activeParameter"),
        ))
    return SignatureHelp(
        signatures=tuple(signatures),
        active_signature=raw.get("activeSignature") or 0,
        active_parameter=raw.get("activeParameter") or 0,
    )


# ── Backend ──────────────────────────────────────────────────────────────


class LspBackend:
    """Completion backend for one document served by an LspClient."""

    def __init__(
        self,
        client: LspClient,
        uri: str,
        *,
        language_id: str = "plaintext",
        text_provider: Callable[[], str] | None = None,
    ) -> None:
        self.client = client
        self.uri = uri
        self.language_id = language_id
        self.text_provider = text_provider
        self._version = 0
        self._synced: str | None = None

    @property
    def completion_trigger_characters(self) -> list[str]:
        provider = self.client.server_capabilities.get("completionProvider") or {}
        return provider.get("triggerCharacters") or []

    @property
    def signature_trigger_characters(self) -> list[str]:
        provider = self.client.server_capabilities.get("signatureHelpProvider") or {}
        return provider.get("triggerCharacters") or []

    def sync(self, text: str) -> None:
        """Push the buffer to the server if it changed since the last push."""
        if text == self._synced:
            return
        self._version += 1
        if self._synced is None:
            self.client.notify("textDocument/didOpen", {
                "textDocument": {
                    "uri": self.uri,
                    "languageId": self.language_id,
                    "version": self._version,
                    "text": text,
                },
            })
        else:
            self.client.notify("textDocument/didChange", {
                "textDocument": {"uri": self.uri, "version": self._version},
                "contentChanges": [{"text": text}],
            })
        self._synced = text

    def _position_params(self, position: Position) -> dict[str, Any]:
        return {
            "textDocument": {"uri": self.uri},
            "position": {"line": position.line, "character": position.character},
        }

    async def request_completions(
        self, position: Position, context: TriggerContext
    ) -> CompletionResult:
        self.sync(context.buffer_text)
        params = self._position_params(position)
        if context.kind is TriggerKind.TRIGGER_CHARACTER:
            params["context"] = {"triggerKind": 2, "triggerCharacter": context.character}
        else:
            params["context"] = {"triggerKind": 1}
        raw = await self.client.request("textDocument/completion", params)
        return result_from_lsp(raw)

    async def resolve_item_detail(self, item: CompletionItem) -> CompletionItem | None:
        provider = self.client.server_capabilities.get("completionProvider") or {}
        if not provider.get("resolveProvider") or not isinstance(item.data, dict):
            return None
        raw = await self.client.request("completionItem/resolve", item.data)
        return item_from_lsp(raw)

    async def request_signature_help(self, position: Position) -> SignatureHelp | None:
        if "signatureHelpProvider" not in self.client.server_capabilities:
            return None
        if self.text_provider is not None:
            self.sync(self.text_provider())
        raw = await self.client.request(
            "textDocument/signatureHelp", self._position_params(position)
        )
        return signature_from_lsp(raw)

    async def close(self) -> None:
        if self._synced is not None and self.client.running:
            self.client.notify("textDocument/didClose", {"textDocument": {"uri": self.uri}})
        self._synced = None
