from typing import List

from sshbridge.config import MAX_MESSAGE_LENGTH


def split_message(text: str, limit: int = MAX_MESSAGE_LENGTH) -> List[str]:
    """Split ``text`` into ordered chunks of at most ``limit`` characters.

    Chunks break after a newline whenever possible; a single line longer than
    ``limit`` is cut hard. Joining the chunks with ``"".join`` gives back the
    original text exactly.
    """
    if limit <= 0:
        raise ValueError("limit must be positive")
    if len(text) <= limit:
        return [text]

    chunks: List[str] = []
    current = ""
    for line in text.splitlines(keepends=True):
        if len(current) + len(line) <= limit:
            current += line
            continue
        if current:
            chunks.append(current)
            current = ""
        while len(line) > limit:
            chunks.append(line[:limit])
            line = line[limit:]
        current = line
    if current:
        chunks.append(current)
    return chunks
