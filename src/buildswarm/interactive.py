#!/usr/bin/env python3
"""
Interactive CLI for BuildSwarm
Describe a program, watch the agents build it, get a verified binary.
"""

import argparse
import sys
from typing import List, Optional

from .agents import create_default_agents
from .config import ConfigError, SwarmConfig, load_config
from .logging_setup import setup_logging
from .models import ConversationTurn, Role, WorkflowOutcome
from .streaming import StreamAccumulator
from .workflow_manager import WorkflowContext, WorkflowManager, WorkflowResult


def print_banner():
    """Print welcome banner"""
    banner = """
╔══════════════════════════════════════════════════════════════════════════════╗
║                                                                              ║
║                     BUILDSWARM: GENERATE - BUILD - RUN - VALIDATE            ║
║                                                                              ║
║  Round-robin agents • Verified tool calls • Targeted repair feedback         ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""
    print(banner)

    print("\n🤖 Agent Roles:")
    print("   • CodeGenerator  - Writes the C# program and build manifest")
    print("   • CodeCompiler   - Builds it with the .NET SDK")
    print("   • CodeExecutor   - Runs the binary (console or GUI)")
    print("   • CodeValidator  - Checks the output against your request")
    print("\n" + "=" * 80 + "\n")


def get_multiline_input(prompt: str) -> str:
    """Get multiline input from user"""
    print(prompt)
    print("(Type your input. Enter 'END' on a new line when done)")
    print("-" * 80)

    lines = []
    while True:
        try:
            line = input()
            if line.strip().upper() == 'END':
                break
            lines.append(line)
        except EOFError:
            break

    return '\n'.join(lines)


def print_configuration(config: SwarmConfig):
    """Display the effective configuration"""
    mode = config.raw.get("model_config", {}).get("mode", "single")
    print(f"   Mode: {mode}")
    for role in (Role.GENERATOR, Role.VALIDATOR):
        settings = config.model_for(role)
        print(f"      • {role.author_name:14s}: {settings.model[:40]:40s} ({settings.api_type} @ {settings.url})")
    print(f"   Max iterations: {config.workflow.max_iterations}")
    print(f"   Execution timeout: {config.execution.timeout_seconds}s"
          f" (GUI {config.execution.gui_timeout_seconds}s)")
    print(f"   Interactive fallback: {'on' if config.execution.allow_interactive_fallback else 'off'}")


class TurnPrinter:
    """Prints streamed text as it arrives and each finished turn once."""

    def __init__(self):
        self.accumulator = StreamAccumulator()
        self._streaming: Optional[Role] = None

    def on_stream(self, role: Role, text: str):
        if self._streaming != role:
            self._streaming = role
            print(f"\n─── {role.author_name} ───")
        print(self.accumulator.delta(role, text), end="", flush=True)

    def on_turn(self, turn: ConversationTurn):
        if turn.directive:
            target = turn.target.author_name if turn.target else "all"
            print(f"\n⚠ [{turn.author.author_name} → {target}] {turn.text}")
            return
        if turn.author == Role.MANAGER:
            return

        streamed = self.accumulator.last_seen(turn.author)
        if self._streaming == turn.author and streamed:
            # Already shown chunk by chunk; print only what the agent added afterwards
            remainder = self.accumulator.delta(turn.author, turn.text)
            if remainder.strip():
                print(remainder)
            print()
        else:
            print(f"\n─── {turn.author.author_name} ───")
            print(turn.text)
        self.accumulator.reset(turn.author)
        self._streaming = None


def generate_workflow_report(result: WorkflowResult):
    """Print workflow execution report"""
    print("\n" + "=" * 80)
    print("WORKFLOW EXECUTION REPORT")
    print("=" * 80)

    symbol = "✓" if result.succeeded else "✗"
    print(f"\n{symbol} Outcome: {result.outcome.value} ({result.reason})")
    print(f"   Role turns: {result.role_turn_count}")
    print(f"   CompileCode calls: {result.audit.compile_calls}")
    print(f"   ExecuteCode calls: {result.audit.execute_calls}")
    if result.binary_path:
        print(f"   Binary: {result.binary_path}")

    print("\n📈 Agent Performance:")
    for agent_name, metrics in result.metrics.items():
        print(f"   {agent_name}:")
        print(f"      Calls: {metrics.total_calls} (✓ {metrics.successful_calls}, ✗ {metrics.failed_calls})")
        print(f"      Avg response time: {metrics.avg_response_time:.2f}s")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="buildswarm",
        description="Generate, build, run and validate a C# program from a description",
    )
    parser.add_argument("--spec", help="Program description (skips the interactive prompt)")
    parser.add_argument("--spec-file", help="Read the program description from a file")
    parser.add_argument("--config", help="Path to buildswarm.yaml")
    parser.add_argument("--max-iterations", type=int, help="Override the iteration ceiling")
    parser.add_argument(
        "--allow-interactive-fallback",
        action="store_true",
        help="Retry console-handle failures attached to this terminal",
    )
    parser.add_argument("--no-save", action="store_true", help="Do not write the session state file")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point"""
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"❌ {e}")
        return 2

    if args.max_iterations is not None:
        config.workflow.max_iterations = args.max_iterations
    if args.allow_interactive_fallback:
        config.execution.allow_interactive_fallback = True
    if config.workflow.max_iterations < 1:
        print(f"❌ max_iterations must be at least 1, got {config.workflow.max_iterations}")
        return 2

    setup_logging(config.logging.log_dir, config.logging.level, config.logging.console_level)

    print_banner()
    print_configuration(config)

    if args.spec_file:
        try:
            with open(args.spec_file, "r", encoding="utf-8") as f:
                specification = f.read()
        except OSError as e:
            print(f"\n❌ Could not read request file: {e}")
            return 2
    elif args.spec:
        specification = args.spec
    else:
        specification = get_multiline_input(
            f"\n{'='*80}\nWhat would you like to build?\n{'='*80}\n"
        )

    if not specification.strip():
        print("\n❌ No request provided. Exiting.")
        return 2

    context = WorkflowContext.create(config)
    printer = TurnPrinter()
    manager = WorkflowManager(
        create_default_agents(config, context),
        context,
        max_iterations=config.workflow.max_iterations,
        sessions_dir=config.workflow.sessions_dir,
        on_turn=printer.on_turn,
        on_stream=printer.on_stream,
    )

    print("\n" + "=" * 80)
    print("EXECUTING BUILD WORKFLOW")
    print("=" * 80)

    try:
        result = manager.run(specification)
    except KeyboardInterrupt:
        print("\n\n⚠ Workflow interrupted by user")
        return 130

    generate_workflow_report(result)
    if not args.no_save:
        print(f"\n💾 Session saved to: {manager.save_state()}")

    if result.outcome == WorkflowOutcome.SUCCESS:
        print("\n✓ Workflow complete!")
        return 0
    print("\n✗ Workflow stopped without a validated program.")
    return 1


if __name__ == "__main__":
    sys.exit(main())
