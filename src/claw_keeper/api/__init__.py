from claw_keeper.api.routes import register_keeper_routes

__all__ = ["register_keeper_routes"]
