"""
Intent classification - a keyword heuristic over the user's message that
decides which prompt mode the model runs in and how a plain reply is labelled.
"""

import re

DOCUMENTATION = "documentation"
EXECUTION = "execution"
HYBRID = "hybrid"

DOC_KEYWORDS = (
    "what does", "how does", "how to", "what is", "explain",
    "documentation", "help", "parameters", "example", "how much",
    "price", "cost", "countries", "available", "what types",
    "difference", "which", "list", "show", "information",
    # Spanish
    "qué hace", "que hace", "cómo funciona", "como funciona",
    "parámetros", "parametros", "ejemplo", "cuánto cuesta",
    "cuanto cuesta", "precio", "qué es", "que es", "explicar",
    "explica", "documentación", "ayuda", "países", "paises",
    "disponible", "qué tipos", "que tipos", "diferencia",
    "cuáles", "cuales", "listar", "mostrar", "información", "informacion",
)

EXEC_KEYWORDS = (
    "validate", "verify", "check", "search", "run", "execute", "lookup", "fetch", "get",
    # Spanish
    "valida", "verifica", "consulta", "busca", "ejecuta",
)

DOCUMENT_NUMBER = re.compile(r"\d{6,}")
PLATE = re.compile(r"[A-Z]{3}[\s-]?\d{3}|[A-Z]{2}[\s-]?\d{4}", re.IGNORECASE)

MODE_DESCRIPTIONS = {
    DOCUMENTATION: "The user is asking about the services. Answer from the tool catalog.",
    HYBRID: "The user might want information OR execute an action. Provide info and offer to execute.",
    EXECUTION: "The user wants to execute a validation. Use the available tools.",
}


def classify_intent(message):
    text = (message or "").lower()
    has_identifier = bool(DOCUMENT_NUMBER.search(text) or PLATE.search(text))
    asks = any(kw in text for kw in DOC_KEYWORDS)
    acts = any(kw in text for kw in EXEC_KEYWORDS)

    if has_identifier and acts:
        return EXECUTION
    if asks and not has_identifier:
        return DOCUMENTATION
    if acts and not has_identifier:
        return HYBRID
    if has_identifier:
        return EXECUTION
    return DOCUMENTATION


def plain_reply_type(intent):
    """Label for a reply that carried no tool call."""
    return DOCUMENTATION if intent == DOCUMENTATION else "guided_flow"
