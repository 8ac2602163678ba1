from __future__ import annotations

from typing import Any


DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful customer support AI assistant. Your role is to answer customer questions "
    "accurately and professionally using the provided context.\n\n"
    "Rules:\n"
    "- Only answer based on the provided context. If the context does not contain enough "
    "information, say so honestly.\n"
    "- Be concise but thorough. Use bullet points or numbered lists for multi-step answers.\n"
    "- Maintain a friendly, professional tone.\n"
    "- If the question is unclear, ask for clarification.\n"
    "- Never make up information. If unsure, recommend the customer contact a human agent.\n"
    "- Include relevant details from the context but do not copy it verbatim."
)

NO_INFORMATION_CONTEXT = (
    "No relevant information was found in the knowledge base for this question. "
    "Tell the customer you do not have that information and offer to connect them with a human agent."
)

LOW_CONFIDENCE_MESSAGE = (
    "I'm sorry, I don't have enough information to answer that question confidently. "
    "Let me connect you with a human agent who can help."
)
PROCEDURE_HANDOVER_MESSAGE = (
    "I wasn't able to complete that request automatically. Let me connect you with a human agent who can help."
)
RATE_LIMITED_MESSAGE = "We're receiving a lot of messages right now. Please try again in a moment."

# Shown when something unexpected fails after the request was admitted.
CHANNEL_FALLBACK_MESSAGES: dict[str, str] = {
    "web": (
        "I apologize, but I encountered an error generating a response. "
        "Please try again or contact support."
    ),
    "email": (
        "Thank you for your message. We ran into a problem preparing an automated reply, "
        "so a member of our support team will follow up with you by email."
    ),
    "sms": "Sorry, something went wrong. Please try again shortly or reply HELP to reach an agent.",
    "whatsapp": "Sorry, something went wrong on our side. Please try again in a moment or ask for an agent.",
    "voice": "I'm sorry, I'm having trouble right now. Please hold while I transfer you to an agent.",
}


def fallback_message(channel: str) -> str:
    return CHANNEL_FALLBACK_MESSAGES.get(channel, CHANNEL_FALLBACK_MESSAGES["web"])


def build_context_block(retrieved: list[dict[str, Any]]) -> str:
    if not retrieved:
        return NO_INFORMATION_CONTEXT
    blocks = []
    for idx, chunk in enumerate(retrieved, start=1):
        score = float(chunk.get("score") or 0.0)
        blocks.append(f"[Source {idx}] (relevance: {score * 100:.1f}%)\n{chunk.get('text', '')}")
    return "\n\n---\n\n".join(blocks)


def build_messages(
    history: list[dict[str, Any]],
    retrieved: list[dict[str, Any]],
    user_message: str,
    *,
    custom_system_prompt: str | None = None,
) -> list[dict[str, str]]:
    system_prompt = DEFAULT_SYSTEM_PROMPT
    if custom_system_prompt:
        # Tenant instructions go first so they frame the default rules.
        system_prompt = f"{custom_system_prompt}\n\n{system_prompt}"
    system_prompt += "\n\n## Retrieved Context\n\n" + build_context_block(retrieved)

    messages = [{"role": "system", "content": system_prompt}]
    messages.extend({"role": msg["role"], "content": msg["content"]} for msg in history)
    messages.append({"role": "user", "content": user_message})
    return messages
