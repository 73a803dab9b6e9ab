"""Prompt construction for the conversation partner."""

from datetime import datetime

from .models import Contact, ConversationSession


def hours_since(last_call_time: datetime | None, now: datetime) -> int | None:
    if last_call_time is None:
        return None
    return max(0, int((now - last_call_time).total_seconds() // 3600))


def build_ringing_prompt(contact: Contact, now: datetime) -> str:
    """Prompt for the short update a contact gives when picking up the phone."""
    hours = hours_since(contact.last_call_time, now)
    if hours is None:
        elapsed = "This is the first time you talk."
    else:
        elapsed = f"Time elapsed: {hours} hours."
    return f"""
        Generate a realistic update about what {contact.name} did since your last interaction.
        Context: {contact.personality}. {elapsed}
        Response must be 1-2 sentences, natural conversational tone.
    """


def build_conversation_context(session: ConversationSession, transcript: str) -> str:
    """Render the bounded call history followed by the new user line."""
    lines = []
    for speaker, text in session.history:
        name = 'User' if speaker == ConversationSession.USER else session.contact.name
        lines.append(f"{name}: {text}")
    lines.append(f"User: {transcript}")
    return '\n'.join(lines)


def build_reply_prompt(session: ConversationSession, transcript: str,
                       review_words: list[str]) -> str:
    """Prompt for the contact's next line in the call."""
    contact = session.contact
    context = build_conversation_context(session, transcript)
    review = ', '.join(review_words) if review_words else 'none'
    return f"""
        You are {contact.name}, on a phone call with a friend who is learning your language.
        Personality: {contact.personality}

        Conversation so far:
        {context}

        Reply as {contact.name} with 1-2 short, natural sentences.
        If it fits naturally, reuse some of these words the learner is practising: {review}
        Write only the reply, no translations, no explanations.
    """
