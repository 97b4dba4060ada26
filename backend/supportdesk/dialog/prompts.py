"""
Prompt templates for the dialog functions.

Prompts are German: agents and end customers of the desk work in German.
Builders take plain dicts (``to_dict()`` of the models) so they stay free of
database access.
"""
import json
from typing import Any, Dict, Iterable, List, Optional

from .envelope import ALLOWED_ACTIONS, KEY_OPTIONS

NO_USE_CASE = "Keine Use Case Information verfügbar."

TASK_CHAT_ROLE = """Du bist die digitale Assistentin bei avanti-suite und hilfst bei Kundenanfragen.
WICHTIG: Stell dich niemals persönlich mit Namen vor. Formuliere keine Sätze wie "Mein Name ist..." oder "Ich bin Ava...".
Beginne stattdessen sofort mit der Hauptinformation oder Frage, ohne Begrüßung wie "Guten Tag" oder "Hallo".

WICHTIG: Sprich den Kunden immer direkt an. Verwende "Sie" und "Ihre" für den Kunden, nicht "der Kunde" oder den Namen des Kunden in der dritten Person.
Beispiel: Sage "Wie Ihre Bestellung versendet wird" und NICHT "wie die Bestellung von Herr/Frau X versendet wird".
Nutze nur die direkte Anrede."""

END_CUSTOMER_NOTE = """WICHTIG: Frage NICHT erneut nach dem Namen oder der Adresse des Endkunden, da diese Informationen bereits bekannt sind.
Gehe direkt zum Kern des Problems über. Solltest du dennoch spezifischere Informationen zur Wohnung oder zum Gebäude benötigen,
die nicht in den angegebenen Daten enthalten sind, kannst du gezielt danach fragen."""

DIRECT_START = f"""Komm direkt zum Punkt, OHNE BEGRÜSSUNG wie "Guten Tag" oder "Hallo". Beginne mit einer kurzen Frage zum Use Case.

Bei "Schlüssel verloren" biete folgende Optionen an:
{json.dumps(KEY_OPTIONS, ensure_ascii=False)}

Bei "Bestellung stornieren" frage zuerst nach der Bestellnummer oder einem anderen eindeutigen Identifikator."""

SELECTED_OPTION_HINTS = {
    "Hausschlüssel": 'Der Kunde hat "Hausschlüssel" gewählt. Frage nach der Anzahl der Schlüssel.',
    "Wohnungsschlüssel": 'Der Kunde hat "Wohnungsschlüssel" gewählt. Frage nach der Wohnungsnummer.',
    "Briefkastenschlüssel": 'Der Kunde hat "Briefkastenschlüssel" gewählt. Frage nach der Briefkastennummer.',
}

ENVELOPE_FORMAT = f"""Antworte IMMER als JSON-Objekt in diesem Format:
{{
  "text": "Deine Nachricht an den Agenten",
  "options": ["Antwortoption 1", "Antwortoption 2"],
  "action": "{'|'.join(ALLOWED_ACTIONS)}",
  "summary_draft": "optional: Entwurf einer Zusammenfassung, wenn der Fall abschlussbereit ist",
  "text_to_agent": "optional: interner Hinweis an den Agenten",
  "suggested_confirmation_text": "optional: Bestätigungstext für den Endkunden"
}}
- "next_step": der nächste Schritt im Use Case
- "propose_completion": alle Informationen liegen vor, schlage den Abschluss vor
- "clarification_needed": eine Angabe ist unklar oder widersprüchlich
- "human_handoff_suggested": der Fall sollte an einen Menschen übergeben werden
Wenn es keine sinnvollen Antwortoptionen gibt, gib eine leere Liste zurück."""

SUMMARY_INSTRUCTION = """Erstelle jetzt eine kurze, sachliche Zusammenfassung des bisherigen Verlaufs dieser Aufgabe für die Dokumentation.
Nenne das Anliegen, die erfassten Informationen und den aktuellen Stand.
Antworte ausschließlich als JSON-Objekt im Format {"summary_text": "..."}."""


def _value(data: Dict[str, Any], key: str, default: str = "Nicht angegeben") -> str:
    value = data.get(key)
    return str(value) if value not in (None, "") else default


def end_customer_block(end_customer: Dict[str, Any]) -> str:
    lines = [
        "Ein Endkunde ist bereits ausgewählt. Hier sind die Daten:",
        f"Vorname: {_value(end_customer, 'first_name')}",
        f"Nachname: {_value(end_customer, 'last_name')}",
        f"Adresse: {_value(end_customer, 'address')}",
        f"PLZ: {_value(end_customer, 'postal_code')}",
        f"Ort: {_value(end_customer, 'city')}",
    ]
    for key, label in (("building", "Gebäude"), ("apartment", "Wohnung"), ("location", "Lage")):
        if end_customer.get(key):
            lines.append(f"{label}: {end_customer[key]}")
    return "\n".join(lines) + "\n\n" + END_CUSTOMER_NOTE


def contacts_block(contacts: Iterable[Dict[str, Any]]) -> str:
    lines = ["Ansprechpartner des Kunden:"]
    for contact in contacts:
        details = [_value(contact, "name")]
        if contact.get("role"):
            details.append(str(contact["role"]))
        if contact.get("email"):
            details.append(str(contact["email"]))
        if contact.get("phone"):
            details.append(str(contact["phone"]))
        lines.append("- " + ", ".join(details))
    return "\n".join(lines)


def use_case_block(use_case: Dict[str, Any]) -> str:
    lines = [
        "Folge diesem Use Case für die Aufgabe:",
        f"Titel: {_value(use_case, 'title', 'Unbekannt')}",
        f"Typ: {_value(use_case, 'type', 'Unbekannt')}",
        f"Benötigte Informationen: {_value(use_case, 'information_needed', 'Keine spezifischen Informationen benötigt')}",
        f"Schritte: {_value(use_case, 'steps', 'Keine spezifischen Schritte definiert')}",
    ]
    if use_case.get("expected_result"):
        lines.append(f"Erwartetes Ergebnis: {use_case['expected_result']}")
    if use_case.get("next_question"):
        lines.append(f"Nächste Frage: {use_case['next_question']}")
    if use_case.get("process_map"):
        lines.append(
            "\nFolge diesen Prozessschritten:\n"
            + json.dumps(use_case["process_map"], ensure_ascii=False, indent=2)
        )
    return "\n".join(lines)


def build_task_chat_system_prompt(
    use_case: Optional[Dict[str, Any]] = None,
    end_customer: Optional[Dict[str, Any]] = None,
    contacts: Optional[List[Dict[str, Any]]] = None,
    selected_options: Optional[List[str]] = None,
    is_auto_initialization: bool = False
) -> str:
    """System instruction for one task chat turn."""
    selected_options = selected_options or []
    parts = [TASK_CHAT_ROLE]

    if end_customer:
        parts.append(end_customer_block(end_customer))

    if contacts:
        parts.append(contacts_block(contacts))

    if use_case:
        parts.append(use_case_block(use_case))

        if is_auto_initialization or not selected_options:
            parts.append(DIRECT_START)

        for option, hint in SELECTED_OPTION_HINTS.items():
            if option in selected_options:
                parts.append(hint)
                break
    else:
        parts.append(NO_USE_CASE)

    parts.append(ENVELOPE_FORMAT)
    return "\n\n".join(parts)


def build_auto_init_prompt(
    task: Dict[str, Any],
    use_case: Optional[Dict[str, Any]] = None,
    end_customer: Optional[Dict[str, Any]] = None,
    customer_name: Optional[str] = None
) -> str:
    """Second system turn when the chat starts without agent input."""
    use_case_title = (use_case or {}).get("title") or "Unbekannt"
    description = task.get("description") or "Keine Beschreibung"
    customer_name = customer_name or "der Kunde"

    prompt = (
        'Der Chat wurde automatisch initiiert. Starte direkt mit der konkreten Frage oder Information '
        'ohne Begrüßung wie "Guten Tag" oder "Hallo".\n'
        f'Fokussiere auf den Use Case "{use_case_title}". Die Aufgabe betrifft: "{description}".\n'
        f'Spreche den Kunden direkt an mit "Sie" und "Ihre", nicht als "{customer_name}" in der dritten Person.'
    )

    if end_customer:
        prompt += (
            f"\nDer Endkunde {_value(end_customer, 'first_name', '')} {_value(end_customer, 'last_name', '')} "
            "wurde bereits identifiziert.\n"
            "Frage NICHT erneut nach Namen oder Adresse. Gehe direkt zum nächsten relevanten Schritt im Prozess über."
        )
    return prompt


# ===========================
# Dialog authoring (intelligent-dialog-api)
# ===========================

JSON_REQUEST = "\n\nBitte antworte mit einem strukturierten JSON-Format für den Dialog-Flow."

COMPLEXITY_KEYWORDS = (
    "meldet", "melden", "schaden", "schadensmeldung",
    "kündigung", "kündigungsfristen", "vertragsart",
    "reparatur", "reparaturanfrage", "wartung",
    "problem", "probleme", "störung",
    "anfrage", "anfragen", "antrag",
    "unterschiedlich", "je nach", "abhängig von",
    "verschiedene", "variiert", "unterscheiden",
    "typ", "art", "kategorie", "sorte",
)

AUTHORING_BASE = """Du hilfst ADMINS beim Erstellen von USE CASE STRUKTUREN für Guided Dialogs.

KRITISCH - DU ERSTELLST USE CASES, KEINE LIVE-DIALOGE!
- Der Admin definiert einen Use Case (z.B. "Mietbescheinigung", "Schadensmeldung")
- Du hilfst dabei, die STRUKTUR und FRAGEN zu definieren, die später Endkunden gestellt werden
- Du simulierst NICHT den Live-Dialog mit Endkunden!
- Du fragst NICHT nach Kundendaten wie Namen, Adressen etc.

PERSPEKTIVE:
- ADMIN-SICHT: "Welche Frage soll der Use Case stellen?"
- NICHT Endkunden-Sicht: "Wie heißt du?"

AVANTI SUITE KONTEXT:
- Avanti Suite hat KEINEN direkten Tool-Zugriff (außer explizit genannt)
- Fast alle Use Cases sind WEITERLEITUNGEN an Menschen
{routing}

AUFGABE: Schlage vor, welche FRAGE/SCHRITT der Use Case enthalten soll.

FLOW-KOMPLEXITÄT BESTIMMEN:
1. EINFACHER FLOW: Wenn alle benötigten Informationen unabhängig sind
   → EINE Sammelabfrage für alle Informationen
2. KOMPLEXER FLOW: Nur wenn nachfolgende Fragen von vorherigen Antworten abhängen
   → Mehrstufige Abfrage mit bedingten Folgefragen
3. WISSENSVERMITTLUNG: Wenn nach Informationen/Bedingungen/Regelungen gefragt wird
   → KEINE Rückfrage, sondern direkt strukturierte Wissensinhalte (knowledge_content) bereitstellen
4. REGEL-BASIERTE VERZWEIGUNGEN: Bei Schadensmeldung, Kündigung oder Beratung direkt typische
   Kriterien mit Optionen, Regeln und einer Standard-Aktion vorschlagen, ohne den Admin nach Kriterien zu fragen.

WICHTIG - ABSCHLUSS-LOGIK:
- Wenn bereits ein "final" Schritt existiert oder der Use Case vollständig ist, schlage KEINE weiteren Schritte vor!
- Antworte dann: "Der Use Case ist vollständig. Keine weiteren Schritte erforderlich."
- Generiere NIEMALS mehrere Abschluss-Schritte!

ANTWORT-FORMAT:
{{
  "step_suggestion": "Welche Frage/Schritt soll der Use Case haben?",
  "reasoning": "Warum ist dieser Schritt im Use Case sinnvoll?",
  "step_type": "question|input|routing|final|knowledge|conditional|rule_based",
  "options": ["Option1", "Option2"],
  "fields": [{{"name": "field_name", "label": "Anzeigename", "type": "text|email|phone|date|date_range|number|textarea|select|multi_select", "required": true}}],
  "knowledge_content": "Editierbarer Wissensinhalt für knowledge-Steps",
  "condition_question": "Welche Art von Schaden liegt vor?",
  "branches": [{{"condition": "Schadensart", "condition_value": "Wasserschaden", "condition_label": "Bei Wasserschaden", "steps": []}}],
  "rule_branching": {{"type": "rule_based", "available_fields": [], "rules": [], "default_actions": []}}
}}

FALSCHE BEISPIELE (Live-Dialog):
- "Bitte gib deinen Namen an" ❌
- "Wie heißt du?" ❌

WICHTIG: Du definierst die USE CASE STRUKTUR, nicht den Live-Dialog!"""

MODE_SUFFIXES = {
    "generate": """PRÜFE ZUERST: Welche Use Case Schritte sind bereits definiert?

Schlage den nächsten Use Case Schritt vor:
1. Welche FRAGE soll der Use Case an Endkunden stellen?
2. Welche ANTWORTOPTIONEN soll es geben?
3. Welche EINGABEFELDER werden benötigt?
4. Routing-Definition (falls noch nicht vollständig)
5. Abschluss des Use Case Flows

DENKE DARAN: Du definierst die STRUKTUR für spätere Endkunden-Nutzung!

FORMAT: Ein Use Case Struktur-Vorschlag im JSON-Format.""",
    "refine": """Im Verfeinerungsmodus sollst du:
1. Den bestehenden Dialog-Flow analysieren
2. Verbesserungsvorschläge machen
3. Lücken oder potenzielle Probleme identifizieren
4. Auf Klarheit und Benutzerfreundlichkeit achten
5. Sicherstellen, dass alle notwendigen Informationen erfasst werden""",
    "validate": """Im Validierungsmodus sollst du:
1. Den Dialog-Flow auf Vollständigkeit prüfen
2. Sicherstellen, dass keine kritischen Informationen fehlen
3. Logische Fehler oder Sackgassen im Flow identifizieren
4. Eine klare Ja/Nein-Antwort geben, ob der Flow vollständig und funktionsfähig ist
5. Konkrete Verbesserungsvorschläge machen, falls Probleme gefunden werden""",
}


def routing_instructions(routing_info: Optional[Dict[str, Any]]) -> str:
    routing_info = routing_info or {}
    recipient = routing_info.get("recipient")

    if routing_info.get("requiresRouting") is False:
        return "- ROUTING: Keine Weiterleitung erforderlich - Dialog wird direkt von Avanti beantwortet"
    if recipient and routing_info.get("email"):
        return (
            f"- ROUTING: Bereits vollständig ({recipient} - {routing_info['email']}) - "
            f'NIEMALS mehr nach Routing fragen! Nur "Weiterleiten an {recipient}" als finalen Schritt vorschlagen.'
        )
    return (
        "- ROUTING: Noch nicht vollständig - bei Bedarf nach "
        '"An wen soll die Anfrage geschickt werden?" und E-Mail-Adresse fragen'
    )


def build_authoring_prompt(mode: str = "generate", routing_info: Optional[Dict[str, Any]] = None) -> str:
    base = AUTHORING_BASE.format(routing=routing_instructions(routing_info))
    suffix = MODE_SUFFIXES.get(mode)
    return f"{base}\n\n{suffix}" if suffix else base


def is_complexity_candidate(text: str) -> bool:
    lowered = text.lower()
    return any(keyword in lowered for keyword in COMPLEXITY_KEYWORDS)
