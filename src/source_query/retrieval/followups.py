"""Keyword-driven follow-up question suggestions."""

from typing import Callable

Predicate = Callable[[str], bool]


def _mentions(*keywords: str) -> Predicate:
    """Case-insensitive substring match on any keyword."""
    lowered = [k.lower() for k in keywords]
    return lambda text: any(k in text for k in lowered)


# Evaluated top to bottom; the first matching rule wins.
FOLLOW_UP_RULES: list[tuple[Predicate, list[str]]] = [
    (
        _mentions("admission", "apply", "application", "eligibility", "enrol"),
        [
            "What documents are required for admission?",
            "What is the last date to apply?",
            "Is there an entrance exam?",
        ],
    ),
    (
        _mentions("fee", "tuition", "cost", "scholarship"),
        [
            "Are scholarships available?",
            "Can the fees be paid in installments?",
            "What does the fee include?",
        ],
    ),
    (
        _mentions("placement", "recruit", "internship", "salary", "job"),
        [
            "Which companies recruit on campus?",
            "What is the average placement package?",
            "Are internships part of the program?",
        ],
    ),
    (
        _mentions("course", "program", "curriculum", "degree", "syllabus"),
        [
            "What is the duration of the program?",
            "What subjects are covered in the curriculum?",
            "Are there any specializations offered?",
        ],
    ),
    (
        _mentions("hostel", "housing", "accommodation", "dorm"),
        [
            "What are the hostel fees?",
            "Is accommodation available for first-year students?",
            "What facilities do the hostels provide?",
        ],
    ),
    (
        _mentions("facilit", "library", "laborator", "campus", "sports"),
        [
            "What are the library timings?",
            "What sports facilities are available?",
            "Is there Wi-Fi on campus?",
        ],
    ),
]

DEFAULT_FOLLOW_UPS = [
    "What courses are offered?",
    "How do I apply for admission?",
    "What is the fee structure?",
]


def suggest_follow_ups(question: str, answer: str = "") -> list[str]:
    """Return follow-up questions for the first rule matching question + answer."""
    text = f"{question} {answer}".lower()
    for predicate, questions in FOLLOW_UP_RULES:
        if predicate(text):
            return list(questions)
    return list(DEFAULT_FOLLOW_UPS)
