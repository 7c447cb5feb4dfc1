"""
Catalogue of the fixed, pre-printed QR codes.

Question codes Q001-Q200 lead to a trivia question; meme codes M001-M100 only show a
greeting. The catalogue is static, so lookups never touch the database.
"""

from dataclasses import dataclass
from functools import lru_cache
from typing import List, Optional, Tuple

QUESTION_CODE_COUNT = 200
MEME_CODE_COUNT = 100

QUESTION = "question"
MEME = "meme"


@dataclass(frozen=True)
class MemeMessage:
    id: int
    emoji: str
    text: str
    subtext: str


@dataclass(frozen=True)
class QRCode:
    id: str
    type: str
    path: str
    meme_id: Optional[int] = None

    def url(self, base_url: str) -> str:
        return base_url.rstrip("/") + self.path

    def to_dict(self, base_url: str) -> dict:
        d = {"id": self.id, "type": self.type, "url": self.url(base_url)}
        if self.meme_id is not None:
            d["memeId"] = self.meme_id
        return d


MEME_MESSAGES: Tuple[MemeMessage, ...] = (
    MemeMessage(1, "🎊", "Happy New Year!", "May all your wishes come true!"),
    MemeMessage(2, "🍀", "Better luck next time!", "Don't give up~"),
    MemeMessage(3, "😜", "Nope~", "Hehe, try again!"),
    MemeMessage(4, "🧧", "Where's my lucky money?", "Have a joyful Tet!"),
    MemeMessage(5, "🐎", "Year of the Horse!", "Success at full gallop!"),
    MemeMessage(6, "🎉", "You're good...", "But not good enough! 😏"),
    MemeMessage(7, "🔥", "Hot hot hot!", "Way too hot!"),
    MemeMessage(8, "💪", "Keep going!", "You can do it!"),
    MemeMessage(9, "🎯", "So close!", "Just a little more!"),
    MemeMessage(10, "🌸", "Spring is here!", "Peach blossoms everywhere!"),
    MemeMessage(11, "🎁", "Where's the prize?", "Find another code!"),
    MemeMessage(12, "🌟", "You're a star!", "Even without a win 😄"),
    MemeMessage(13, "🎪", "So much fun!", "It's Tet, enjoy it!"),
    MemeMessage(14, "🏮", "Red lanterns!", "Peace and prosperity!"),
    MemeMessage(15, "🎶", "Happy New Year!", "♪♫ La la la ♫♪"),
)


@lru_cache(maxsize=1)
def _fixed_codes() -> Tuple[QRCode, ...]:
    codes = []
    for i in range(1, QUESTION_CODE_COUNT + 1):
        qid = f"Q{i:03d}"
        codes.append(QRCode(id=qid, type=QUESTION, path=f"/question/{qid}"))
    for i in range(1, MEME_CODE_COUNT + 1):
        mid = f"M{i:03d}"
        meme = MEME_MESSAGES[(i - 1) % len(MEME_MESSAGES)]
        codes.append(QRCode(id=mid, type=MEME, path=f"/meme/{mid}", meme_id=meme.id))
    return tuple(codes)


def generate_fixed_codes() -> List[QRCode]:
    return list(_fixed_codes())


def get_code(qr_id: str) -> Optional[QRCode]:
    for code in _fixed_codes():
        if code.id == qr_id:
            return code
    return None


def is_valid_code(qr_id: str) -> bool:
    return get_code(qr_id) is not None


def code_type(qr_id: str) -> Optional[str]:
    code = get_code(qr_id)
    return code.type if code else None


def get_meme_message(meme_id: int) -> MemeMessage:
    for m in MEME_MESSAGES:
        if m.id == meme_id:
            return m
    return MEME_MESSAGES[0]


def meme_for_code(qr_id: str) -> MemeMessage:
    """Meme shown for a code; unknown ids map to a stable message via a character sum."""
    code = get_code(qr_id)
    if code is not None and code.meme_id is not None:
        return get_meme_message(code.meme_id)
    h = sum(ord(ch) for ch in qr_id)
    return MEME_MESSAGES[h % len(MEME_MESSAGES)]
