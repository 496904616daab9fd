"""Flow file commands."""

import sys
from typing import Dict, List, Optional, Tuple

import click
from rich.markup import escape

from flowbot_core.errors import FlowError
from flowbot_core.flow.builder import FlowTemplates
from flowbot_core.flow.conditions import ConversationEvent
from flowbot_core.flow.engine import FlowEngine
from flowbot_core.flow.loader import load_graph
from flowbot_core.flow.models import FlowGraph
from flowbot_core.flow.presentation import derive_label, node_summary, to_canvas
from flowbot_core.flow.validator import FlowValidator

from ..utils.output import (
    console,
    format_output,
    print_error,
    print_info,
    print_success,
    print_warning,
)

TEMPLATES = {
    "keyword_menu": FlowTemplates.keyword_menu_flow,
    "confirmation": FlowTemplates.confirmation_flow,
}


def _load(path: str) -> FlowGraph:
    try:
        return load_graph(path)
    except FlowError as e:
        print_error(f"Failed to load flow: {e}")
        sys.exit(1)


def _parse_context(pairs: Tuple[str, ...]) -> Dict[str, str]:
    context = {}
    for pair in pairs:
        if "=" not in pair:
            raise click.BadParameter(f"expected KEY=VALUE, got {pair!r}", param_hint="--context")
        key, value = pair.split("=", 1)
        context[key.strip()] = value
    return context


@click.command("validate")
@click.argument("flow_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--strict", is_flag=True, help="Treat warnings as errors")
@click.pass_context
def validate(ctx: click.Context, flow_file: str, strict: bool):
    """Validate a flow file.

    \b
    Examples:
      flowbot validate support.json
      flowbot -o json validate support.yaml --strict
    """
    graph = _load(flow_file)
    result = FlowValidator().validate(graph)
    output = ctx.obj["output"]

    if output != "table":
        format_output(result.model_dump(mode="json"), output)
    elif result.issues:
        format_output(
            [i.model_dump() for i in result.issues],
            output,
            columns=["severity", "code", "node_id", "edge_id", "message"],
            title=f"Flow {graph.flow_id}",
        )

    failed = not result.valid or (strict and bool(result.warnings))
    if output == "table":
        if failed:
            print_error(f"{len(result.errors)} error(s), {len(result.warnings)} warning(s)")
        elif result.warnings:
            print_warning(f"Valid with {len(result.warnings)} warning(s)")
        else:
            print_success(f"Flow {graph.flow_id} is valid")

    if failed:
        sys.exit(1)


@click.command("labels")
@click.argument("flow_file", type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def labels(ctx: click.Context, flow_file: str):
    """Show the label of every edge as the editor renders it."""
    graph = _load(flow_file)
    rows = [
        {
            "id": edge.id,
            "source": edge.source,
            "target": edge.target,
            "condition_type": edge.condition_type.value,
            "priority": edge.priority,
            "label": derive_label(edge),
        }
        for edge in graph.edges
    ]
    format_output(rows, ctx.obj["output"], title="Edges")


@click.command("canvas")
@click.argument("flow_file", type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def canvas(ctx: click.Context, flow_file: str):
    """Render a flow in the editor's canvas shape."""
    graph = _load(flow_file)
    output = ctx.obj["output"]

    if output != "table":
        format_output(to_canvas(graph), output)
        return

    format_output(
        [
            {
                "id": node.id,
                "type": node.kind.value,
                "entry": node.id == graph.start_node_id,
                "summary": node_summary(node),
            }
            for node in graph.nodes
        ],
        output,
        title="Nodes",
    )


@click.command("simulate")
@click.argument("flow_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--message", "-m", "messages", multiple=True, help="Inbound message (repeatable)")
@click.option("--intent", "-i", "intents", multiple=True,
              help="Intent for the message at the same position (repeatable)")
@click.option("--context", "-c", "context_pairs", multiple=True, help="Initial variable KEY=VALUE")
@click.pass_context
def simulate(
    ctx: click.Context,
    flow_file: str,
    messages: Tuple[str, ...],
    intents: Tuple[str, ...],
    context_pairs: Tuple[str, ...],
):
    """Run a conversation against a flow.

    \b
    Examples:
      flowbot simulate support.json -m "hi there" -m "yes"
      flowbot simulate support.json -m "book" -i booking -c name=Ana
    """
    graph = _load(flow_file)
    context = _parse_context(context_pairs)

    events: List[ConversationEvent] = []
    for index, text in enumerate(messages):
        intent: Optional[str] = intents[index] if index < len(intents) and intents[index] else None
        events.append(ConversationEvent.message(text, intent=intent))

    engine = FlowEngine()
    state = engine.start(graph, conversation_id="simulation", initial_context=context)
    if state.is_terminal:
        print_error(f"Flow cannot start: {state.error_message}")
        sys.exit(1)

    transcript = []
    results = engine.simulate(graph, events, conversation_id="simulation", initial_context=context)
    for event, result in zip(events, results):
        transcript.append({
            "input": event.text,
            "node": result.state.current_node_id,
            "status": result.status.value,
            "actions": [a.to_dict() for a in result.actions],
        })

    output = ctx.obj["output"]
    if output != "table":
        final = results[-1].state if results else state
        format_output({"steps": transcript, "final_state": final.to_dict()}, output)
        return

    for step in transcript:
        console.print(f"[bold]> {escape(step['input'])}[/bold]")
        for action in step["actions"]:
            payload = action["payload"]
            if action["type"] == "send_message":
                console.print(f"  [green]{escape(payload['text'])}[/green]")
            elif action["type"] == "fail":
                console.print(f"  [red]{escape(payload['message'])}[/red] ({payload['reason']})")
            else:
                console.print(f"  [dim]{action['type']}[/dim] {action['node_id']}")
        console.print(f"  [cyan]{step['status']}[/cyan] at {step['node']}")

    if len(results) < len(events):
        print_info(f"Conversation ended; {len(events) - len(results)} message(s) not delivered")


@click.command("template")
@click.argument("name", type=click.Choice(sorted(TEMPLATES)))
@click.option("--format", "-f", "fmt", type=click.Choice(["json", "yaml"]), default="json",
              help="Serialization format")
def template(name: str, fmt: str):
    """Print a built-in flow template."""
    builder = TEMPLATES[name]()
    click.echo(builder.to_yaml() if fmt == "yaml" else builder.to_json())
