"""
Example 01: Coding Agent
========================

Demonstrates a full agent loop:
- A persistent AgentSession backed by SQLite
- A SandboxManager running commands in a Docker container
- A CodingAgent that calls tools and compacts its memory between turns

Requires a local Docker daemon. Run without an API key:
    RUNLEDGER_MOCK_LLM=1 uv run python examples/01_coding_agent.py

Run with a real LLM (set your API key first):
    ANTHROPIC_API_KEY=sk-... uv run python examples/01_coding_agent.py
"""

import asyncio
import sys
import tempfile
from pathlib import Path

# Add project root to path when running directly
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))


async def main() -> None:
    from runledger import (
        AgentSession,
        CodingAgent,
        CompactionConfig,
        RunledgerConfig,
        SandboxConfig,
        SandboxManager,
        StoreConfig,
        ToolBox,
        configure_logging,
    )

    configure_logging("info")
    workspace = Path(tempfile.mkdtemp(prefix="runledger_ws_"))

    # A small budget so compaction happens within a few turns
    config = RunledgerConfig(
        store=StoreConfig(db_path="/tmp/runledger_example_01.db"),
        compaction=CompactionConfig(max_tokens=4_000, compact_at_percent=50, keep_recent_messages=4),
        sandbox=SandboxConfig(host_workspace=str(workspace)),
    )

    sandbox = SandboxManager(config.sandbox)
    try:
        async with AgentSession.open(config=config) as session:
            agent = CodingAgent(session, ToolBox(sandbox), config.agent)
            print(f"Session: {session.id}\nWorkspace: {workspace}\n")

            prompts = [
                "!echo 'print(\"hello\")' > hello.py",
                "!python hello.py",
                "What did we just do?",
                "!ls -la",
            ]
            for prompt in prompts:
                reply = await agent.respond(prompt)
                print(f"> {prompt}")
                print(f"{reply.text}\n")
                print(
                    f"  steps={reply.steps} tools={reply.tool_calls} "
                    f"tokens={session.total_tokens} compacted={reply.compacted}\n"
                )

            if session.summary:
                print("Summary so far:\n" + session.summary)
    finally:
        await sandbox.teardown()


if __name__ == "__main__":
    asyncio.run(main())
