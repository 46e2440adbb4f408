from __future__ import annotations


class EngineError(Exception):
    pass


class BotNotFound(EngineError):
    def __init__(self, bot_id: str):
        super().__init__(f"bot not found: {bot_id}")
        self.bot_id = bot_id


class InvalidBotConfig(EngineError):
    pass


class InvalidTransition(EngineError):
    def __init__(self, bot_id: str, current: str, event: str):
        super().__init__(f"bot {bot_id}: cannot {event} while {current}")
        self.bot_id = bot_id
        self.current = current
        self.event = event


class OrderAlreadyPending(EngineError):
    def __init__(self, bot_id: str, key: str):
        super().__init__(f"bot {bot_id}: order {key} still outstanding")
        self.bot_id = bot_id
        self.key = key
