"""Interactive console demo of the agent runner.

Reads configuration from the environment / .env / config.yaml (OPENROUTER_API_KEY is required).
Tool proposals that need approval are confirmed on the console.
"""

import asyncio
import sys

from agent_runner import ChatService
from agent_runner.domain.state import AwaitingApproval, is_terminal


async def _run_turn(service: ChatService, text: str) -> None:
    stream = service.orchestrator.subscribe()
    task = service.send(text)
    try:
        async for note in stream:
            if note.delta:
                print(note.delta, end="", flush=True)
            state = note.state
            if isinstance(state, AwaitingApproval) and note.message is None:
                p = state.proposal
                print(f"\n[tool] {p.tool_name} {p.arguments}")
                answer = await asyncio.to_thread(input, "Allow? [y/N] ")
                if answer.strip().lower() in ("y", "yes"):
                    service.approve(p.id)
                else:
                    service.reject(p.id)
            if is_terminal(state) and task.done():
                break
    finally:
        stream.close()
    print(f"\n[{type(service.orchestrator.state).__name__}]")


async def main() -> None:
    service = ChatService()
    service.new_session()
    print("Type a message, or 'exit' to quit.")
    while True:
        text = (await asyncio.to_thread(input, "You: ")).strip()
        if text in ("exit", "quit"):
            break
        if text:
            await _run_turn(service, text)


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        sys.exit(0)
