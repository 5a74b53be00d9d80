"""Example plugin: answers !ping."""

from typing import Any

from chatplug.plugin import CommandContext, Plugin


class PingPlugin(Plugin):
    """Replies with pong, optionally echoing the arguments."""

    async def initialize(self) -> None:
        self.reply_text = self.context.config.get("reply", "pong")
        self._initialized = True

    async def execute_command(self, command: str, context: CommandContext) -> Any:
        if command == "pinginfo":
            info = self.get_info()
            return f"{info['name']} {info['version']} commands: {', '.join(info['commands'])}"

        if context.args:
            return f"{self.reply_text} {' '.join(context.args)}"
        return self.reply_text
