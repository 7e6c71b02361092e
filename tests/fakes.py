"""Fakes for the OpenAI streaming client."""

from types import SimpleNamespace


def text_chunk(content=None, finish_reason=None):
    """A streamed chat-completions chunk carrying text."""
    delta = SimpleNamespace(content=content, tool_calls=None)
    return SimpleNamespace(choices=[SimpleNamespace(delta=delta, finish_reason=finish_reason)])


def tool_chunk(name=None, arguments=None, finish_reason=None, index=0):
    """A streamed chat-completions chunk carrying a tool-call delta."""
    call = SimpleNamespace(index=index, function=SimpleNamespace(name=name, arguments=arguments))
    delta = SimpleNamespace(content=None, tool_calls=[call])
    return SimpleNamespace(choices=[SimpleNamespace(delta=delta, finish_reason=finish_reason)])


def finish_chunk(finish_reason):
    delta = SimpleNamespace(content=None, tool_calls=None)
    return SimpleNamespace(choices=[SimpleNamespace(delta=delta, finish_reason=finish_reason)])


class FakeCompletions:
    """Stands in for `client.chat.completions`; each create() replays the next script."""

    def __init__(self, scripts):
        self.scripts = list(scripts)
        self.requests = []

    async def create(self, **kwargs):
        # Snapshot messages; the agent's log keeps growing after the call.
        self.requests.append({**kwargs, "messages": list(kwargs.get("messages", []))})
        if not self.scripts:
            raise AssertionError("Unexpected completion request")
        chunks = self.scripts.pop(0)
        if isinstance(chunks, Exception):
            raise chunks

        async def stream():
            for chunk in chunks:
                yield chunk

        return stream()


def fake_openai_client(scripts):
    completions = FakeCompletions(scripts)
    return SimpleNamespace(chat=SimpleNamespace(completions=completions))
