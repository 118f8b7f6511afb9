"""Handlebars prompt rendering for narration calls.

Every prompt shares one layout: the system instruction, the story so far,
this turn's party actions (when there are any) and the task. The service is
stateless, so continuity rides entirely on [CURRENT STORY].
"""

from collections.abc import Callable, Sequence
from typing import Any

import pybars

from storysync.models import Session


_compiler = pybars.Compiler()
_cache: dict[str, Callable] = {}


class PromptError(Exception):
    """Raised when a Handlebars template fails to compile or render."""


PROMPT_TEMPLATE = (
    "{{{system}}}\n"
    "\n[CURRENT STORY]\n"
    "{{{story}}}\n"
    "{{#if actions}}"
    "\n[PARTY ACTIONS THIS TURN]\n"
    "{{#each actions}}- {{{this}}}\n{{/each}}"
    "{{/if}}"
    "\n[GAME MASTER TASK]\n"
    "{{{task}}}\n"
)

COMPANION_SYSTEM = (
    "You are an AI companion in a co-op text adventure. Reply with ONE short "
    "first-person action that reacts to the scene and the other players this "
    "turn. No narration, no extra sentences, just your action."
)
COMPANION_TASK = "Choose a helpful action this turn."

GAME_MASTER_SYSTEM = (
    "You are an AI GAME MASTER. STRICTLY resolve only the actions listed in "
    "[PARTY ACTIONS THIS TURN]; do not invent player actions. Acknowledge each "
    "action briefly with the actor's name and immediate outcome, then narrate "
    "consequences that keep continuity with [CURRENT STORY]. Describe only "
    "world/NPC reactions you control. Keep 3-6 short sentences total. Use "
    "inventory tags [GAIN item] / [LOSE item] when appropriate. End with a "
    "line starting with NEXT: followed by 1-2 clear choices (no questions)."
)
GAME_MASTER_TASK = "Narrate consequences and offer 1-2 obvious next choices."

PROLOGUE_SYSTEM = (
    "You are an AI GAME MASTER. Start the adventure with a vivid, cinematic "
    "opening. Write 4-6 short sentences that set the scene, tone, and "
    "immediate stakes. Reference the party if helpful. Keep it tight and "
    "game-like. Finish with a line that begins with NEXT: and 1-2 clear "
    "choices (no questions)."
)
PROLOGUE_TASK = (
    "Introduce the world so players know where they are and what they can do next."
)


def render_prompt(template_str: str, context: dict[str, Any]) -> str:
    """Compile and render a Handlebars template with the given context.

    Templates are cached by source string to avoid recompilation.
    """
    try:
        compiled = _cache.get(template_str)
        if compiled is None:
            compiled = _compiler.compile(template_str)
            _cache[template_str] = compiled
        return str(compiled(context))
    except Exception as e:
        raise PromptError(f"Template error: {e}") from e


def build_prompt(system: str, story: str, task: str, actions: Sequence[str] = ()) -> str:
    return render_prompt(PROMPT_TEMPLATE, {
        "system": system,
        "story": story,
        "actions": list(actions),
        "task": task,
    })


def companion_prompt(narrative: str, party_actions: Sequence[str]) -> str:
    return build_prompt(COMPANION_SYSTEM, narrative, COMPANION_TASK, party_actions)


def game_master_prompt(narrative: str, party_actions: Sequence[str]) -> str:
    return build_prompt(GAME_MASTER_SYSTEM, narrative, GAME_MASTER_TASK, party_actions)


def prologue_prompt(session: Session) -> str:
    party = ", ".join(p.display_name for p in session.participants.values())
    story = f"Seed:{session.world_seed}\nPlayers:{party}\n{session.narrative}"
    return build_prompt(PROLOGUE_SYSTEM, story, PROLOGUE_TASK)
