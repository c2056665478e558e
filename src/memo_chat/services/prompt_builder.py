"""Prompt construction for grounded, cited answers."""

from typing import List, Sequence

from memo_chat.models.chunk import Context

SYSTEM_PROMPT = """You are VoiceGPT, an AI assistant that helps users understand and explore their voice memos.
Use the provided excerpts from the user's voice memo history to answer questions.
If you quote or reference information, cite it like [memo:<id>#<chunk>].
If the information needed to answer is not in the provided context, say so briefly.
Be concise and helpful.
Always provide accurate citations for any information you reference."""

NO_CONTEXT_NOTICE = "(No relevant voice memos were found for this question.)"


def format_context_block(context: Context) -> str:
    return f"— [memo:{context.memo_id} #{context.chunk_index}] {context.text}"


def build_user_prompt(contexts: Sequence[Context], question: str) -> str:
    """User turn: every context block tagged with its source, then the question."""
    if contexts:
        blocks = "\n".join(format_context_block(c) for c in contexts)
    else:
        blocks = NO_CONTEXT_NOTICE
    return f"Context from your voice memos:\n{blocks}\n\nQuestion:\n{question}"


def build_messages(contexts: Sequence[Context], question: str) -> List[str]:
    """``[system_prompt, user_prompt]`` for ``LLMService.stream_complete``."""
    return [SYSTEM_PROMPT, build_user_prompt(contexts, question)]
