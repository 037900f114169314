"""
Prompt templates for the impostor-hunting agents.

Every builder reads only an AgentContext snapshot, never live session state.
"""
from models.game import AgentContext
from utils.text import player_label, player_list

_SYSTEM = """You are playing a social deduction game in a group chat. You are assigned the name "{me}". There are {alive_count} players currently in the game: {alive}. Most players are AIs, and {human_count} of them is a human pretending to be an AI. You do not know which players are AIs and which is the human.

Your job:
1. Chat naturally about the given topic
2. Try to figure out which player is the human
3. Be conversational — use short, casual messages like a group chat
4. Refer to other players by their player number
5. Do NOT reveal your actual AI model name or identity
6. Do NOT say you are an AI directly — just chat like a normal participant
7. Pay attention to how others write — look for signs of human behavior

Keep messages short (1-3 sentences typically). Be natural. Sometimes agree, sometimes disagree, sometimes ask questions to other players."""

_VOTE_FORMAT = 'Respond in exactly this format:\n"I vote for Player [number]! [Your reasoning in 1-2 sentences]"'


def _history(ctx: AgentContext) -> str:
    return "\n".join(f"[{player_label(e.player)}]: {e.text}" for e in ctx.transcript)


def build_system_prompt(ctx: AgentContext) -> str:
    return _SYSTEM.format(
        me=player_label(ctx.player_number),
        alive_count=len(ctx.alive_players),
        alive=player_list(ctx.alive_players),
        human_count=ctx.human_count,
    )


def build_chat_prompt(ctx: AgentContext) -> str:
    history = _history(ctx)
    if history:
        section = f"\nHere is the chat so far:\n{history}\n"
    else:
        section = "\nNo messages have been sent yet. You are starting the conversation.\n"
    return (
        f'The current topic is: "{ctx.topic}"{section}\n'
        f"Write your next message as {player_label(ctx.player_number)}. "
        "Just write the message text — do not include your player name or any prefix. "
        "Keep it short and casual (1-3 sentences)."
    )


def build_vote_prompt(ctx: AgentContext) -> str:
    if ctx.tied_players:
        return _build_revote_prompt(ctx)
    return (
        f"Here is the full chat history from this round:\n{_history(ctx)}\n\n"
        "The conversation round is over. Based on the chat history, you must vote for "
        "the player you think is the human. You MUST vote for someone other than yourself "
        f"({player_label(ctx.player_number)}). The other players are: {player_list(ctx.other_players)}.\n\n"
        f"{_VOTE_FORMAT}"
    )


def _build_revote_prompt(ctx: AgentContext) -> str:
    defenses = "\n".join(
        f"[{player_label(n)} defense]: {ctx.defenses[n]}"
        for n in ctx.tied_players
        if n in ctx.defenses
    ) or "(no defenses were given)"
    return (
        f"Here is the full chat history:\n{_history(ctx)}\n\n"
        f"Here are the tiebreaker paragraphs:\n{defenses}\n\n"
        f"You must now vote to eliminate one of the tied players: {player_list(ctx.tied_players)}. "
        f"You MUST vote for someone other than yourself ({player_label(ctx.player_number)}).\n\n"
        f"{_VOTE_FORMAT}"
    )


def build_defense_prompt(ctx: AgentContext) -> str:
    others = [n for n in ctx.tied_players if n != ctx.player_number]
    return (
        f"Here is the full chat history:\n{_history(ctx)}\n\n"
        f"You are in a tiebreaker with {player_list(others)}. Your survival is at stake — "
        "if the tie isn't broken, ALL tied players are eliminated.\n\n"
        "Write a short paragraph (3-5 sentences). Focus primarily on calling out suspicious "
        "behavior from the other tied players — point out specific things they said or did "
        "that suggest they are the human. You may briefly defend yourself, but your main goal "
        "is to build a case against the others. Be specific, reference actual messages from "
        "the chat, and be aggressive."
    )
