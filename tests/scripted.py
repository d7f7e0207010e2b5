"""
Scripted stand-in for the language model.
"""

import json


def action(name: str, thought: str = "", **action_input) -> str:
    """Model output for one tool call, in the fenced encoding."""
    payload = {"thought": thought or f"Calling {name}", "action": name, "action_input": action_input}
    return f"```json\n{json.dumps(payload)}\n```"


def final(text: str) -> str:
    return action("final_answer", thought="Done", response=text)


class ScriptedModel:
    """
    Replays canned outputs in order (the last one repeats), streamed in two
    chunks, and records the messages it was sent. An output may be a callable
    taking the messages.
    """

    def __init__(self, outputs):
        self.outputs = list(outputs)
        self.calls: list[list[dict]] = []

    async def stream(self, messages):
        self.calls.append(list(messages))
        output = self.outputs.pop(0) if len(self.outputs) > 1 else self.outputs[0]
        text = output(messages) if callable(output) else output
        middle = len(text) // 2
        yield text[:middle]
        yield text[middle:]

    async def complete(self, messages, **overrides):
        return "".join([chunk async for chunk in self.stream(messages)])
