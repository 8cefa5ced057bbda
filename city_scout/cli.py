import asyncio
import os
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv
from prompt_toolkit import PromptSession
from prompt_toolkit.formatted_text import HTML
from rich.console import Console
from rich.markdown import Markdown

load_dotenv()
app = typer.Typer()
console = Console()


def _service():
    from city_scout.places.resolver import PlaceTypeCache, PlaceTypeResolver
    from city_scout.service import CityScout
    from city_scout.storage.blobs import make_blob_store
    from city_scout.storage.records import make_record_store

    return CityScout(make_record_store(), make_blob_store(), PlaceTypeResolver(PlaceTypeCache()))


def _run(coro):
    """Run a service call, turning CityScout errors into a red message and exit code 1."""
    from city_scout.errors import CityScoutError

    try:
        return asyncio.run(coro)
    except CityScoutError as exc:
        console.print(f"[bold red]Error:[/] {exc}")
        raise typer.Exit(1)


def _exit_on_redirect(result: dict) -> None:
    if "redirect" in result:
        console.print(
            f"[bold yellow]Not available yet:[/] profile stage is [cyan]{result['stage']}[/], "
            f"continue at [cyan]{result['redirect']}[/]"
        )
        raise typer.Exit(1)


@app.command()
def aggregate(
    export: Path = typer.Argument(help="Google Maps 'My Activity' JSON export"),
    user: str = typer.Option(..., "--user", "-u", help="User id"),
    show: bool = typer.Option(True, "--show/--no-show", help="Print the top-20 tables"),
):
    """Aggregate an activity export into the top-20 searches, directions and views."""
    service = _service()

    async def _aggregate() -> dict:
        await service.ensure_profile(user)
        return await service.aggregate(user, export.read_bytes())

    with console.status("[bold green]Aggregating activity and resolving place types..."):
        result = _run(_aggregate())

    counts = result["raw_counts"]
    console.print(
        f"[dim]{counts['searches']} searches · {counts['directions']} directions · "
        f"{counts['views']} views in the last year[/]"
    )
    if show:
        from city_scout.formatter import format_top_entries

        md = "\n".join(
            format_top_entries(kind, result[f"{kind}_top_20"])
            for kind in ("searches", "directions", "views")
        )
        console.print(Markdown(md))
    console.print(f"[bold green]✓[/] Saved {', '.join(result['files_created'])}")


@app.command()
def synthesize(user: str = typer.Option(..., "--user", "-u", help="User id")):
    """Generate the personality report and tiles from the stored aggregate."""
    with console.status("[bold green]Generating personality insights with OpenAI..."):
        result = _run(_service().synthesize(user))

    from city_scout.formatter import format_profile

    console.print(Markdown(format_profile(result["personality_report"], result["personality_tiles"])))
    console.print("[bold green]✓[/] Review your preferences with [cyan]city-scout review[/]")


@app.command()
def review(user: str = typer.Option(..., "--user", "-u", help="User id")):
    """Step through the generated tags and keep or drop each one."""
    service = _service()
    result = _run(service.preference_review(user))
    _exit_on_redirect(result)

    selections: dict[str, list[str]] = {}
    for i, step in enumerate(result["steps"], start=1):
        console.rule(f"[bold]Step {i} of {len(result['steps'])}: {step['title']}")
        console.print(f"[dim]{step['description']}[/]")
        selections[step["category"]] = [
            tag for tag in step["tags"] if typer.confirm(f"  {tag}", default=True)
        ]

    confirmed = _run(service.confirm_tiles(user, selections))
    _exit_on_redirect(confirmed)
    console.print("[bold green]✓[/] Preferences saved")


@app.command()
def profile(
    user: str = typer.Option(..., "--user", "-u", help="User id"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Save profile to file"),
):
    """Show the confirmed profile."""
    from city_scout.formatter import format_profile

    result = _run(_service().profile_view(user))
    _exit_on_redirect(result)
    md = format_profile(
        result["personality_report"], result["personality_tiles"], result["profile"].get("full_name")
    )
    if output:
        output.write_text(md)
        console.print(f"[bold green]✓[/] Profile saved to [cyan]{output}[/]")
    else:
        console.print(Markdown(md))


async def _chat_loop(user: str) -> None:
    from agents import Runner
    from openai.types.responses import ResponseTextDeltaEvent
    from sqlalchemy.ext.asyncio import create_async_engine

    from city_scout.analyzers.chat_assistant import ChatContext, city_scout_agent
    from city_scout.api.chat_history import open_chat_history
    from city_scout.preferences import profile_stage, required_route
    from city_scout.service import redirect

    service = _service()
    current = await service.get_profile(user)
    route = required_route(current)
    if route is not None:
        _exit_on_redirect(redirect(profile_stage(current), route))

    report, tiles = await service.load_personality(user)
    ctx = ChatContext(user_id=user, report=report, tiles=tiles, resolver=service.resolver)
    engine = create_async_engine(f"sqlite+aiosqlite:///{os.getenv('DB_PATH', 'city_scout.db')}")
    history = open_chat_history(user, engine=engine)
    prompt_session = PromptSession()

    console.print("[bold green]CityScout[/] [dim](type 'exit' to quit)[/]\n")

    while True:
        try:
            user_input = await prompt_session.prompt_async(HTML("<ansigreen><b>You</b></ansigreen>: "))
        except (EOFError, KeyboardInterrupt):
            console.print("\n[dim]Goodbye![/]")
            break

        user_input = user_input.strip()
        if not user_input:
            continue
        if user_input.lower() in ("exit", "quit", "q"):
            console.print("[dim]Goodbye![/]")
            break

        prior = await history.get_history()
        result = Runner.run_streamed(
            city_scout_agent,
            input=list(prior) + [{"role": "user", "content": user_input}],
            context=ctx,
        )
        console.print("\n[bold cyan]CityScout:[/]", end=" ")

        async for event in result.stream_events():
            if event.type == "raw_response_event":
                if isinstance(event.data, ResponseTextDeltaEvent):
                    print(event.data.delta, end="", flush=True)

        print("\n")
        await history.save_messages(result.to_input_list()[len(prior):])

    await engine.dispose()


@app.command()
def chat(user: str = typer.Option(..., "--user", "-u", help="User id")):
    """Chat with the CityScout assistant about places to go."""
    _run(_chat_loop(user))


if __name__ == "__main__":
    app()
