"""Twostep CLI - two-stage completion for a terminal editing buffer.

Commands:
    twostep shell [FILE]    Edit a file with LSP-then-buffer-words completion
    twostep config [PATH]   Show the effective completion configuration
"""

from __future__ import annotations

import asyncio
import shlex
from pathlib import Path
from typing import Annotated, Optional

import typer
from pydantic import ValidationError

from twostep.config import CompletionConfig, load_config
from twostep.diagnostics import Diagnostics, disable_debug, enable_debug
from twostep.exceptions import BackendUnavailable
from twostep.lsp import LspBackend, LspClient
from twostep.repl.shell import EditorShell, lexer_for

# File suffix -> LSP languageId
LANGUAGE_IDS: dict[str, str] = {
    ".py": "python",
    ".pyi": "python",
    ".rs": "rust",
    ".go": "go",
    ".js": "javascript",
    ".ts": "typescript",
    ".c": "c",
    ".h": "c",
    ".cpp": "cpp",
    ".lua": "lua",
    ".md": "markdown",
    ".toml": "toml",
}

app = typer.Typer(
    name="twostep",
    help="Two-stage (language server, then buffer words) completion",
    no_args_is_help=True,
)


def language_id(path: Path | None) -> str:
    if path is None:
        return "plaintext"
    return LANGUAGE_IDS.get(path.suffix.lower(), "plaintext")


def _load(config_path: Path | None) -> CompletionConfig:
    if config_path is None:
        return CompletionConfig()
    try:
        return load_config(config_path)
    except OSError as e:
        raise typer.BadParameter(f"Cannot read config {config_path}: {e}")
    except ValidationError as e:
        raise typer.BadParameter(f"Invalid config {config_path}:\n{e}")


async def _edit(
    path: Path | None,
    text: str,
    lsp_command: list[str] | None,
    config: CompletionConfig,
    diagnostics: Diagnostics,
) -> str | None:
    client = None
    backend = None
    if lsp_command:
        root = (path.parent if path else Path.cwd()).resolve()
        client = LspClient(lsp_command, root_uri=root.as_uri())
        try:
            await client.start()
        except BackendUnavailable as e:
            typer.echo(f"Warning: {e}; running with buffer-word completion only", err=True)
            client = None
        else:
            uri = (path.resolve() if path else root / "untitled").as_uri()
            backend = LspBackend(client, uri, language_id=language_id(path))

    shell = EditorShell(
        text=text,
        backend=backend,
        config=config,
        diagnostics=diagnostics,
        lexer=lexer_for(path),
    )
    if backend is not None:
        backend.text_provider = lambda: shell.prompt.default_buffer.text
    try:
        return await shell.run()
    finally:
        if backend is not None:
            await backend.close()
        if client is not None:
            await client.stop()


@app.command("shell")
def shell(
    file: Annotated[
        Optional[Path],
        typer.Argument(help="File to edit (omit for an empty scratch buffer)"),
    ] = None,
    lsp: Annotated[
        Optional[str],
        typer.Option("--lsp", "-l", help="Language server command line, e.g. 'pylsp'"),
    ] = None,
    config_path: Annotated[
        Optional[Path],
        typer.Option("--config", "-c", help="TOML config file ([tool.twostep] or top-level keys)"),
    ] = None,
    debug: Annotated[
        bool,
        typer.Option("--debug", help="Write diagnostics to .twostep/debug.log"),
    ] = False,
    write: Annotated[
        bool,
        typer.Option("--write", "-w", help="Save the buffer back to FILE on submit"),
    ] = False,
):
    """Open an editing buffer with completion.

    Ctrl-Space completes, Escape Space asks the fallback only, Meta-Enter
    submits.

    Examples:
        twostep shell notes.txt
        twostep shell app.py --lsp pylsp -w
    """
    config = _load(config_path)
    text = ""
    if file is not None and file.exists():
        text = file.read_text()
    if write and file is None:
        raise typer.BadParameter("--write needs a FILE")

    diagnostics = Diagnostics()
    if debug:
        enable_debug(diagnostics)

    command = shlex.split(lsp) if lsp else None
    try:
        result = asyncio.run(_edit(file, text, command, config, diagnostics))
    finally:
        disable_debug(diagnostics)
    if result is None:
        raise typer.Exit(1)
    if write:
        file.write_text(result)
        typer.echo(f"Wrote: {file}")
    else:
        typer.echo(result)


@app.command("config")
def show_config(
    config_path: Annotated[
        Optional[Path],
        typer.Argument(help="TOML config file (omit for defaults)"),
    ] = None,
):
    """Print the effective configuration as JSON.

    Examples:
        twostep config
        twostep config pyproject.toml
    """
    config = _load(config_path)
    typer.echo(config.model_dump_json(indent=2, exclude={"fallback_source"}))
    typer.echo(f"fallback_source: {config.fallback_source!r}")


def main():
    app()


if __name__ == "__main__":
    main()
