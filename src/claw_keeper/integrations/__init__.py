from claw_keeper.integrations.command_runner import run_command

__all__ = ["run_command"]
