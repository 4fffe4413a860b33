import re


def match_any_keyword(text: str, keywords) -> bool:
    """Check if any keyword appears in text as a whole word (not substring)."""
    lower = (text or "").lower()
    return any(re.search(rf"\b{re.escape(kw)}\b", lower) for kw in keywords)


VOICEMAIL_KEYWORDS = {
    "leave a message", "leave your message", "after the tone", "after the beep",
    "voicemail", "voice mail", "mailbox", "not available to take your call",
    "record your message", "leave your name and number",
}

HOLD_KEYWORDS = {
    "hold on", "hang on", "one moment", "one second", "one sec", "just a moment",
    "just a second", "give me a second", "give me a minute", "bear with me",
    "let me check", "let me look", "let me see", "let me pull",
}

TRANSFER_OFFER_KEYWORDS = {
    "let me transfer", "i'll transfer", "i will transfer", "transferring you",
    "putting you through", "let me connect you", "i'll connect you",
}

WRONG_DEPARTMENT_KEYWORDS = {
    "wrong department", "don't handle parts", "do not handle parts",
    "not the right person", "different department", "you want parts",
    "that's parts", "not parts",
}

HUMAN_REQUEST_KEYWORDS = {
    "real person", "talk to a human", "speak to a human", "speak with a human",
    "talk to a person", "speak to a person", "speak with a person",
    "a human being", "your supervisor", "your manager", "someone real",
}

REPEAT_KEYWORDS = {
    "repeat that", "say that again", "come again", "didn't catch",
    "did not catch", "one more time", "spell that", "spell it",
    "what was that", "sorry what", "pardon",
}

AGREEMENT_KEYWORDS = {
    "yes", "yeah", "yep", "yup", "correct", "that's right", "that is right",
    "sounds right", "sounds good", "right", "exactly", "you got it",
    "that's correct", "all good",
}

REJECTION_KEYWORDS = {
    "no", "nope", "not right", "wrong", "incorrect", "actually",
    "that's not", "that is not", "not quite",
}

FIRM_PRICE_KEYWORDS = {
    "best price", "best i can do", "price is firm", "firm price",
    "can't go lower", "cannot go lower", "can't go any lower", "can't do better",
    "no discount", "that's the price", "final price", "can't budge",
}

CALLBACK_KEYWORDS = {
    "call back", "call you back", "call me back", "callback",
    "try again later", "call later",
}

# Letters spelled with the NATO alphabet for read-back
NATO_ALPHABET = {
    "A": "Alpha", "B": "Bravo", "C": "Charlie", "D": "Delta", "E": "Echo",
    "F": "Foxtrot", "G": "Golf", "H": "Hotel", "I": "India", "J": "Juliet",
    "K": "Kilo", "L": "Lima", "M": "Mike", "N": "November", "O": "Oscar",
    "P": "Papa", "Q": "Quebec", "R": "Romeo", "S": "Sierra", "T": "Tango",
    "U": "Uniform", "V": "Victor", "W": "Whiskey", "X": "X-ray", "Y": "Yankee",
    "Z": "Zulu",
}

DIGIT_WORDS = {
    "0": "zero", "1": "one", "2": "two", "3": "three", "4": "four",
    "5": "five", "6": "six", "7": "seven", "8": "eight", "9": "nine",
}


def detect_voicemail(text: str) -> bool:
    return match_any_keyword(text, VOICEMAIL_KEYWORDS)


def detect_hold(text: str) -> bool:
    """Short "hold on / let me check" utterances. Anything carrying a number is an answer."""
    if len(text.split()) > 10 or re.search(r"[\d$]|\bdollars?\b", text.lower()):
        return False
    return match_any_keyword(text, HOLD_KEYWORDS) or match_any_keyword(text, TRANSFER_OFFER_KEYWORDS)


def detect_transfer_offer(text: str) -> bool:
    return match_any_keyword(text, TRANSFER_OFFER_KEYWORDS)


def detect_wrong_department(text: str) -> bool:
    return match_any_keyword(text, WRONG_DEPARTMENT_KEYWORDS)


def detect_human_request(text: str) -> bool:
    return match_any_keyword(text, HUMAN_REQUEST_KEYWORDS)


def detect_repeat_request(text: str) -> bool:
    return match_any_keyword(text, REPEAT_KEYWORDS)


def detect_agreement(text: str) -> bool:
    """Plain acknowledgment with no correction mixed in."""
    if match_any_keyword(text, REJECTION_KEYWORDS):
        return False
    return match_any_keyword(text, AGREEMENT_KEYWORDS)


def detect_rejection(text: str) -> bool:
    return match_any_keyword(text, REJECTION_KEYWORDS)


def detect_firm_price(text: str) -> bool:
    return match_any_keyword(text, FIRM_PRICE_KEYWORDS)


def detect_callback_request(text: str) -> bool:
    return match_any_keyword(text, CALLBACK_KEYWORDS)


def mentions_price(text: str) -> bool:
    """Spoken or written prices: "$45", "forty five dollars", "fifty bucks"."""
    return bool(re.search(r"\$|\bdollars?\b|\bbucks\b|\bcents?\b", (text or "").lower()))


def format_part_number_for_speech(part_number: str) -> str:
    """Separate characters so TTS reads them one by one: "ABC-123" -> "A B C, 1 2 3"."""
    groups = [g for g in re.split(r"[\s\-/]+", part_number or "") if g]
    return ", ".join(" ".join(ch for ch in group) for group in groups)


def spell_part_number(part_number: str) -> str:
    """Phonetic spelling: "AB-12" -> "A as in Alpha, B as in Bravo, dash, one, two"."""
    spoken = []
    for ch in (part_number or "").upper():
        if ch in NATO_ALPHABET:
            spoken.append(f"{ch} as in {NATO_ALPHABET[ch]}")
        elif ch in DIGIT_WORDS:
            spoken.append(DIGIT_WORDS[ch])
        elif ch == "-":
            spoken.append("dash")
        elif ch == "/":
            spoken.append("slash")
    return ", ".join(spoken)
