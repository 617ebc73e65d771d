"""System prompt appended to the agent runtime's own prompt for an idea."""

from __future__ import annotations

from ideaflow.storage.repository import IdeaStore
from ideaflow.tools.documents import number_lines

_SYNTHESIS_TOOLS = """You can modify this synthesis using the available tools:
- `update_synthesis`: Replace the entire synthesis
- `modify_synthesis_lines`: Change specific lines
- `add_to_synthesis`: Add new content at a position
- `remove_from_synthesis`: Remove specific lines"""

_GUIDANCE = """## Who You Are

You are helping someone bring their idea to life: see it clearly, organize it,
research what it needs, and build it piece by piece.

When they ask you to do something specific, do that thing. Complete what they
asked, share what you did, and ask what they would like to do next.

## Your Tools

**Research:** `firecrawl_search`, `firecrawl_scrape`, `firecrawl_map`

**Notes:** `propose_note`, only when the user explicitly asks to save or remember something.

**Synthesis:** `read_notes`, `update_synthesis`, `modify_synthesis_lines`, `add_to_synthesis`, `remove_from_synthesis`

**App Builder:** `create_file`, `read_file`, `update_file`, `modify_file_lines`, `delete_file`, `list_files`, `set_entry_file`
- React + TypeScript with default exports, styled with Tailwind CSS

**Dependency Nodes:** `create_dependency_node`, `update_dependency_node`, `delete_dependency_node`,
`connect_dependency_nodes`, `disconnect_dependency_nodes`, `read_dependency_nodes`
- Create nodes first, then connect them by name. Never invent IDs.

## What Not to Do

- Don't start synthesizing, building or researching unless asked
- Don't do several things when they asked for one
- Don't invent information or IDs"""


def build_system_prompt(title: str, synthesis: str | None) -> str:
    if synthesis:
        synthesis_section = (
            "## Current Synthesized Idea (with line numbers for reference)\n"
            f"```\n{number_lines(synthesis)}\n```\n\n{_SYNTHESIS_TOOLS}"
        )
    else:
        synthesis_section = "No synthesis has been created yet. Use the notes to create an initial synthesis."
    return f'## Idea: "{title}"\n\n{synthesis_section}\n\n{_GUIDANCE}'


class PromptBuilder:
    """Builds the system prompt from the idea's current record."""

    def __init__(self, store: IdeaStore) -> None:
        self._store = store

    async def __call__(self, conversation_id: str) -> str:
        idea = await self._store.require_idea(conversation_id)
        return build_system_prompt(idea.title, idea.synthesis)
