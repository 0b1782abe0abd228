"""MCP tools exposed behind the OAuth gateway.

Tools read the caller's identity from the request-scoped auth context
set by ProtectedResourceMiddleware.
"""

import logging
import random

from fastmcp import FastMCP

from oauth.middleware import get_auth_info

logger = logging.getLogger(__name__)

# Create the FastMCP server instance
mcp = FastMCP("secure-rolldice")


def roll_dice(sides: int = 6) -> str:
    """Roll a die with the given number of sides."""
    if sides < 2:
        raise ValueError("A die needs at least 2 sides")
    value = random.randint(1, sides)

    auth = get_auth_info()
    who = auth.email if auth and auth.email else "anonymous"
    logger.info(f"[TOOL] roll_dice invoked by {who}, sides={sides}")
    return f"🎲 You rolled a {value}!"


@mcp.tool(name="roll_dice")
def roll_dice_tool(sides: int = 6) -> str:
    """Roll an N-sided die.

    Args:
        sides: Number of sides on the die (at least 2)

    Returns:
        The rolled value
    """
    return roll_dice(sides)


@mcp.tool()
def whoami() -> dict:
    """Return the identity the current request was authorized as."""
    auth = get_auth_info()
    if auth is None:
        return {"authenticated": False}
    return {
        "authenticated": True,
        "email": auth.email,
        "client_id": auth.client_id,
        "scopes": sorted(auth.scopes),
        "provider": auth.extra.get("provider"),
    }
