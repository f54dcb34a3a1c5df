"""Agent layer: models, context management, permissions, tools, runner."""
