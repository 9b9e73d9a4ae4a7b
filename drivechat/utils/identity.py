SEPARATOR = "_"


def canonical_conversation_id(user_a: str, user_b: str) -> str:
    """Same id whichever participant starts the thread."""
    first, second = sorted([user_a, user_b])
    return f"{first}{SEPARATOR}{second}"


def typing_signal_id(conversation_id: str, user_id: str) -> str:
    return f"{conversation_id}{SEPARATOR}{user_id}"
