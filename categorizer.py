from typing import Iterable, Optional

from rapidfuzz.distance import Levenshtein

OTHERS = "Others"

# Ordered: the first category with a matching keyword wins.
KEYWORD_CATEGORIES: list[tuple[str, tuple[str, ...]]] = [
    (
        "Transport",
        (
            "uber", "99", "cabify", "lyft", "taxi", "gasolina", "shell",
            "ipiranga", "br distribuidora", "posto", "estacionamento",
            "parking", "pedágio", "pedagio",
        ),
    ),
    (
        "Food",
        (
            "ifood", "rappi", "mcdonald", "burger", "pizza", "starbucks",
            "padaria", "restaurante", "sushi", "café", "lanchonete", "food",
            "açaí", "acai", "mercado", "supermercado", "carrefour",
            "pão de açúcar", "extra",
        ),
    ),
    (
        "Shopping",
        (
            "amazon", "mercado livre", "shopee", "shein", "magalu",
            "magazine luiza", "casas bahia", "americanas", "aliexpress",
            "shopping", "loja", "store",
        ),
    ),
    (
        "Entertainment",
        (
            "netflix", "spotify", "disney", "hbo", "prime video", "apple tv",
            "youtube", "deezer", "cinema", "teatro", "ingresso", "game",
            "steam", "playstation", "xbox",
        ),
    ),
    (
        "Housing",
        (
            "aluguel", "condominio", "condomínio", "imobiliaria",
            "imobiliária", "rent", "mortgage", "hipoteca",
        ),
    ),
    (
        "Utilities",
        (
            "enel", "cemig", "cpfl", "sabesp", "comgas", "comgás", "claro",
            "vivo", "tim", "oi", "internet", "energia", "água", "agua", "luz",
            "gas", "gás", "telefone", "celular",
        ),
    ),
    (
        "Health",
        (
            "farmacia", "farmácia", "drogaria", "droga raia", "pague menos",
            "hospital", "médico", "medico", "clinica", "clínica", "saúde",
            "saude", "plano de saude", "unimed", "amil", "sulamerica",
            "dentista", "laboratorio",
        ),
    ),
    (
        "Education",
        (
            "escola", "faculdade", "universidade", "curso", "udemy",
            "coursera", "mensalidade escolar", "educação", "educacao",
            "livro", "book",
        ),
    ),
    ("Transfer", ("pix", "ted", "doc", "transferencia", "transferência")),
    (
        "Income",
        (
            "salario", "salário", "salary", "wages", "freelance",
            "pagamento recebido", "depósito", "deposito",
        ),
    ),
    ("Subscriptions", ("assinatura", "subscription", "recorrente", "mensalidade")),
    (
        "Travel",
        (
            "hotel", "airbnb", "booking", "decolar", "viagem", "passagem",
            "airline", "gol linhas", "latam", "azul linhas", "trip",
        ),
    ),
]

KNOWN_CATEGORIES: tuple[str, ...] = tuple(name for name, _ in KEYWORD_CATEGORIES) + (
    OTHERS,
)


def auto_categorize(merchant: Optional[str], description: Optional[str]) -> Optional[str]:
    """Keyword guess over merchant and description; None when nothing matches.

    Matching is plain substring search on the lower-cased text, so short
    keywords like "oi" can match inside longer words. That is accepted.
    """
    text = f"{merchant or ''} {description or ''}".lower()
    if not text.strip():
        return None
    for category, keywords in KEYWORD_CATEGORIES:
        for keyword in keywords:
            if keyword in text:
                return category
    return None


def resolve_category(
    category: Optional[str],
    merchant: Optional[str],
    description: Optional[str],
) -> str:
    """Category shown for a ledger row. Stored categories (manual edits or the
    provider's) win; otherwise the keyword guess, then ``OTHERS``."""
    if category and category.strip():
        return category
    return auto_categorize(merchant, description) or OTHERS


def canonical_category_name(raw: str, known: Iterable[str] = KNOWN_CATEGORIES) -> str:
    name = (raw or "").strip()
    if not name:
        raise ValueError("Category is required")
    input_lower = name.lower()

    candidates = sorted({k.strip() for k in known if k and k.strip()})
    for candidate in candidates:
        if candidate.lower() == input_lower:
            return candidate

    best_distance: Optional[int] = None
    best: list[str] = []
    for candidate in candidates:
        dist = int(Levenshtein.distance(input_lower, candidate.lower()))
        if best_distance is None or dist < best_distance:
            best_distance = dist
            best = [candidate]
        elif dist == best_distance:
            best.append(candidate)

    if best_distance is not None and best_distance <= 1 and len(best) == 1:
        return best[0]
    return name
