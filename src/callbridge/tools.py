"""
Tool catalog for chat-completions function calling.

Each tool carries a `say` announcement that is spoken to the caller before the
tool runs, so the line stays alive while a side effect is in flight.
"""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

import structlog

from src.callbridge.config import Config
from src.callbridge.errors import ToolExecutionError

logger = structlog.get_logger(__name__)


@dataclass
class ToolContext:
    """Per-call information handed to tool handlers."""
    call_sid: str
    config: Config


ToolHandler = Callable[[dict[str, Any], ToolContext], Awaitable[dict[str, Any]]]


@dataclass
class ToolSpec:
    name: str
    description: str
    parameters: dict[str, Any]
    say: str
    handler: ToolHandler

    def definition(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


@dataclass
class ToolRegistry:
    tools: dict[str, ToolSpec] = field(default_factory=dict)

    def register(self, spec: ToolSpec) -> None:
        self.tools[spec.name] = spec

    def definitions(self) -> list[dict[str, Any]]:
        return [spec.definition() for spec in self.tools.values()]

    def announcement(self, name: str) -> str:
        spec = self.tools.get(name)
        return spec.say if spec else ""

    async def execute(
        self,
        name: str,
        args: dict[str, Any],
        context: ToolContext,
        *,
        timeout: Optional[float] = None,
    ) -> dict[str, Any]:
        """
        Run a tool handler.

        Raises:
            ToolExecutionError: unknown tool, handler failure, or timeout
        """
        spec = self.tools.get(name)
        if spec is None:
            raise ToolExecutionError(name, "unknown tool")

        started = time.time()
        try:
            if timeout:
                result = await asyncio.wait_for(spec.handler(args, context), timeout=timeout)
            else:
                result = await spec.handler(args, context)
        except asyncio.TimeoutError:
            raise ToolExecutionError(name, f"timed out after {timeout}s")
        except ToolExecutionError:
            raise
        except Exception as e:
            raise ToolExecutionError(name, f"{type(e).__name__}: {e}") from e

        logger.info(
            "Tool executed",
            tool=name,
            call_sid=context.call_sid,
            fields=list(args.keys()),
            ms=int((time.time() - started) * 1000),
        )
        return result


def _model_key(args: dict[str, Any]) -> str:
    model = str(args.get("model") or "").lower()
    if "pro" in model:
        return "pro"
    if "max" in model:
        return "max"
    return "standard"


_STOCK = {"pro": 10, "max": 0, "standard": 100}
_PRICES = {"pro": 249, "max": 549, "standard": 149}


async def check_inventory(args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
    model = str(args.get("model") or "").strip()
    if not model:
        return {"ok": False, "error": "missing_model"}
    return {"ok": True, "model": model, "stock": _STOCK[_model_key(args)]}


async def lookup_price(args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
    model = str(args.get("model") or "").strip()
    if not model:
        return {"ok": False, "error": "missing_model"}
    return {"ok": True, "model": model, "price": _PRICES[_model_key(args)], "currency": "USD"}


async def place_order(args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
    model = str(args.get("model") or "").strip()
    try:
        quantity = int(args.get("quantity") or 0)
    except (TypeError, ValueError):
        quantity = 0
    if not model or quantity < 1:
        return {"ok": False, "error": "missing_model_or_quantity"}

    unit_price = _PRICES[_model_key(args)]
    # Placeholder: no order backend yet, the order number is generated locally.
    order_number = random.randint(1000000, 9999999)
    logger.info("Order placed", call_sid=context.call_sid, model=model, quantity=quantity)
    return {
        "ok": True,
        "order_number": order_number,
        "model": model,
        "quantity": quantity,
        "price": round(unit_price * quantity * 1.079, 2),
        "currency": "USD",
    }


async def transfer_call(args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
    config = context.config
    if not config.transfer_number:
        return {"ok": False, "error": "transfer_not_configured"}
    call_sid = str(args.get("callSid") or context.call_sid or "").strip()
    if not call_sid:
        return {"ok": False, "error": "missing_call_sid"}

    from twilio.rest import Client

    client = Client(config.twilio_account_sid, config.twilio_auth_token)
    twiml = f"<Response><Dial>{config.transfer_number}</Dial></Response>"

    # The Twilio REST client is blocking.
    await asyncio.to_thread(lambda: client.calls(call_sid).update(twiml=twiml))
    logger.info("Call transferred", call_sid=call_sid)
    return {"ok": True, "message": "The call was transferred successfully, say goodbye to the customer."}


_MODEL_PARAM = {
    "type": "string",
    "enum": ["airpods", "airpods pro", "airpods max"],
    "description": "The model of airpods, either the airpods, airpods pro or airpods max",
}


def default_registry() -> ToolRegistry:
    """The AirPods sales catalog."""
    registry = ToolRegistry()
    registry.register(
        ToolSpec(
            name="checkInventory",
            description="Check the inventory of airpods, airpods pro or airpods max.",
            parameters={
                "type": "object",
                "properties": {"model": _MODEL_PARAM},
                "required": ["model"],
            },
            say="Deixa eu verificar nosso estoque agora mesmo.",
            handler=check_inventory,
        )
    )
    registry.register(
        ToolSpec(
            name="lookupPrice",
            description="Check the price of a given model of airpods, airpods pro or airpods max.",
            parameters={
                "type": "object",
                "properties": {"model": _MODEL_PARAM},
                "required": ["model"],
            },
            say="Deixa eu conferir o preço, só um instante.",
            handler=lookup_price,
        )
    )
    registry.register(
        ToolSpec(
            name="placeOrder",
            description="Places an order for a set of airpods.",
            parameters={
                "type": "object",
                "properties": {
                    "model": _MODEL_PARAM,
                    "quantity": {
                        "type": "integer",
                        "description": "The number of airpods they want to order",
                    },
                },
                "required": ["model", "quantity"],
            },
            say="Perfeito, vou fazer o seu pedido agora.",
            handler=place_order,
        )
    )
    registry.register(
        ToolSpec(
            name="transferCall",
            description="Transfers the customer to a live agent in case they request help from a real person.",
            parameters={
                "type": "object",
                "properties": {
                    "callSid": {
                        "type": "string",
                        "description": "The unique identifier for the active phone call.",
                    },
                },
                "required": ["callSid"],
            },
            say="Um momento, vou transferir sua ligação.",
            handler=transfer_call,
        )
    )
    return registry
