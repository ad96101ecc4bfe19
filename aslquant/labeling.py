import logging
from dataclasses import dataclass
from typing import Optional, Sequence

from .metadata import ABSENT, MetadataSource

# any of these (case-insensitive substrings) means continuous-style labeling
CONTINUOUS_KEYWORDS = ("pcasl", "pseudo-continuous", "pseudo", "casl", "continuous")


@dataclass(frozen=True)
class LabelingDecision:
    continuous: bool
    reason: str


def mentions_continuous(text):
    if text is None or text is ABSENT:
        return False
    if not isinstance(text, str):
        text = str(text)
    text = text.lower()
    return any(k in text for k in CONTINUOUS_KEYWORDS)


def detect_labeling(
    labeling_type, sources: Sequence[Optional[MetadataSource]] = ()
) -> LabelingDecision:
    """
    Decide whether a run used continuous/pseudo-continuous labeling.

    The resolved labeling-type field is checked first, then the raw text
    of each sidecar in turn. Finding nothing means pulsed (or unknown)
    labeling, which is not an error.
    """
    if mentions_continuous(labeling_type):
        decision = LabelingDecision(True, "labeling type field")
    else:
        decision = None
        for source in sources:
            if source is None:
                continue
            if mentions_continuous(source.raw_text()):
                decision = LabelingDecision(True, str(source.path))
                break
        if decision is None:
            decision = LabelingDecision(False, "no continuous labeling keywords")

    if decision.continuous:
        logging.info(f"ASL type detected as CASL/pCASL. Reason: {decision.reason}")
    else:
        logging.info("ASL type not detected as CASL/pCASL (likely PASL or unknown)")
    return decision
