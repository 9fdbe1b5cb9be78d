"""
Streamline CLI

Run the API server, follow a conversation's stream from a terminal, or ask
a running turn to stop.
"""
import asyncio
import json
from typing import Any, Dict, Optional

import httpx
import typer

from streamline.client.consumer import StreamConsumer
from streamline.config import get_settings

app = typer.Typer(
    name="streamline",
    help="Normalized AI provider streaming with a replayable event journal",
    add_completion=False,
)


def _default_url() -> str:
    settings = get_settings()
    host = "127.0.0.1" if settings.api_host == "0.0.0.0" else settings.api_host
    return f"http://{host}:{settings.api_port}"


@app.command(help="Run the API server")
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address (default from settings)"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Port (default from settings)"),
    reload: bool = typer.Option(False, "--reload", help="Reload on code changes"),
):
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "streamline.main:create_app",
        factory=True,
        host=host or settings.api_host,
        port=port or settings.api_port,
        reload=reload,
        log_level=settings.log_level.lower(),
    )


def format_event(event: Dict[str, Any]) -> Optional[str]:
    """Human-readable rendering of one stream event, None to print nothing"""
    event_type = event.get("type")
    metadata = event.get("metadata") or {}
    content = event.get("content")

    if event_type in ("text_delta", "thinking_delta", "tool_use_delta"):
        return content
    if event_type == "text_stop":
        return "\n"
    if event_type == "thinking_start":
        return "[thinking] "
    if event_type == "thinking_stop":
        return "\n"
    if event_type == "tool_use_start":
        return f"[tool] {metadata.get('tool_name')} "
    if event_type == "tool_use_stop":
        return "\n"
    if event_type == "tool_result":
        marker = "error" if metadata.get("is_error") else "result"
        return f"[{marker}] {content}\n"
    if event_type == "usage":
        line = f"[usage] in={metadata.get('input_tokens')} out={metadata.get('output_tokens')}"
        if metadata.get("cost") is not None:
            line += f" cost=${metadata['cost']:.4f}"
        if event.get("replayed"):
            line += " (replayed)"
        return line + "\n"
    if event_type == "system_info":
        return f"[system] {content}\n"
    if event_type == "compaction_summary":
        return f"[compacted] {content}\n"
    if event_type == "error":
        return f"[error] {content}\n"
    if event_type == "done":
        return f"[done] {metadata.get('stop_reason')}\n"
    if event_type == "stream_status":
        return f"Stream {event.get('status')} (last index {event.get('final_index')})\n"
    return None


async def _tail(consumer: StreamConsumer, from_index: int, replay: bool, json_output: bool) -> Optional[str]:
    events = consumer.events(from_index=from_index, replay=replay)
    try:
        async for event in events:
            if json_output:
                typer.echo(json.dumps(event))
                continue
            text = format_event(event)
            if text:
                typer.echo(text, nl=False)
    finally:
        await events.aclose()
    return consumer.final_status


@app.command(help="Follow a conversation's event stream")
def tail(
    conversation_id: str = typer.Argument(..., help="Conversation id"),
    from_index: int = typer.Option(0, "--from-index", "-i", help="First event index to read"),
    replay: bool = typer.Option(False, "--replay", help="Read from the start, flagging already stored events"),
    json_output: bool = typer.Option(False, "--json", help="Print raw JSON events"),
    url: Optional[str] = typer.Option(None, "--url", help="API base URL"),
):
    consumer = StreamConsumer(url or _default_url(), conversation_id)
    try:
        status = asyncio.run(_tail(consumer, from_index, replay, json_output))
    except httpx.HTTPError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)
    except KeyboardInterrupt:
        typer.echo("\nStopped following")
        raise typer.Exit(code=130)

    if status in ("failed", "timeout", "not_found"):
        raise typer.Exit(code=1)


@app.command(help="Ask a running turn to stop")
def abort(
    conversation_id: str = typer.Argument(..., help="Conversation id"),
    skip_sync: bool = typer.Option(False, "--skip-sync", help="Do not write the partial turn into native history"),
    url: Optional[str] = typer.Option(None, "--url", help="API base URL"),
):
    consumer = StreamConsumer(url or _default_url(), conversation_id)
    try:
        result = asyncio.run(consumer.abort(skip_sync=skip_sync))
    except httpx.HTTPStatusError as e:
        if e.response.status_code == 404:
            typer.echo(f"No active stream for {conversation_id}", err=True)
        else:
            typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)
    except httpx.HTTPError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)

    typer.echo(f"Abort requested for {result['conversation_id']}")


if __name__ == "__main__":
    app()
