"""
🔧 NORMALIZACIÓN DE TEXTO ENTRANTE
==================================

- Extracción de links del cuerpo del mensaje (en orden de aparición)
- Normalización de números MSISDN de Twilio
"""

import re
from typing import List

# http(s)://… hasta un espacio o delimitador típico de chat
_URL_RE = re.compile(r"https?://[^\s<>\"'`]+", re.IGNORECASE)
# Puntuación que suele pegarse al final del link en un mensaje
_TRAILING = ".,;:!?)]}»"


def extract_links(text: str) -> List[str]:
    """
    Devuelve los links del texto sin duplicados, en orden de aparición.

    'mira https://x.com/a, y https://x.com/a!' → ['https://x.com/a']
    """
    links: List[str] = []
    for match in _URL_RE.findall(text or ""):
        link = match.rstrip(_TRAILING)
        if link and link not in links:
            links.append(link)
    return links


def normalize_msisdn(n: str) -> str:
    """
    Normaliza un número de teléfono móvil en formato MSISDN.
    'whatsapp:+57 300 123' → '+57300123'
    """
    n = (n or "").strip()
    if n.startswith("whatsapp:"):
        n = n[len("whatsapp:"):]
    n = n.replace(" ", "")
    if n and not n.startswith("+"):
        n = "+" + n
    return n
