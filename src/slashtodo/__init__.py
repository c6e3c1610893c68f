"""SlashTodo: event-sourced, claimable to-do lists for chat slash commands."""

__version__ = "0.1.0"
