"""
Ward Handover Agent - Rule Engine (Generated Task Checklists)

Handover sheets rarely spell out every routine follow-up. A patient marked
NPO needs the fast confirmed and fluids running; a patient going home today
needs a discharge letter. This module turns such trigger words into a fixed
checklist of generated tasks.

================================================================================
HOW RULES ARE EVALUATED
================================================================================

    status notes + flags + diagnosis + explicit task texts
                         │
                         ▼
          ┌───────────────────────────────┐
          │  every rule, in table order   │──── pattern matches? ──► emit all
          └───────────────────────────────┘                          its tasks

- Rules are NOT mutually exclusive: every matching rule fires.
- Output order follows the rule table, not the input text.
- Each emitted task has source=generated, the rule label in generatedFrom
  and a fresh id. Ids are not stable between calls; the scan merger carries
  completion state across rescans by task text.

PATTERN CONVENTIONS:
────────────────────
- Latin abbreviations are word-bounded (\\bBS\\b, \\bDM\\b, \\bISO\\b) so one
  rule's trigger can never be satisfied by another rule's abbreviation
  ("BS" is a bladder scan, not blood sugar).
- Hebrew words match as substrings so attached prefixes (ה, ו, ב, ל) still
  match, except where a short word is the prefix of an unrelated one
  (חום "fever" vs. חומר "material").
- All patterns are compiled case-insensitive.

================================================================================
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import List, Optional, Tuple

from .config import settings, TaskSource, Urgency
from .models import PatientEntry, Task, new_id


logger = logging.getLogger(__name__)


STAT = Urgency.STAT
URGENT = Urgency.URGENT
MORNING = Urgency.MORNING
ROUTINE = Urgency.ROUTINE


@dataclass(frozen=True)
class TriggerRule:
    """
    One row of the rule table.

    Attributes:
        label: Written to generatedFrom on every task the rule emits
        pattern: Compiled trigger pattern
        templates: (text, urgency) pairs, one generated task each
    """
    label: str
    pattern: re.Pattern
    templates: Tuple[Tuple[str, str], ...]

    def matches(self, text: str) -> bool:
        return self.pattern.search(text) is not None


# ==========================================================================
# RULE TABLE
# ==========================================================================
# Each tuple: (label, trigger pattern, [(task text, urgency), ...])

RULE_TABLE: List[Tuple[str, str, List[Tuple[str, str]]]] = [
    # Discharge
    ("משתחרר היום", r"משתחרר|שחרור|לשחרר", [
        ("סיכום מחלה", MORNING),
        ("מכתב שחרור", MORNING),
        ("הסבר תרופות לשחרור למטופל/משפחה", ROUTINE),
        ("תיאום המשך טיפול (רופא משפחה / מרפאה)", ROUTINE),
    ]),
    # NPO / fasting
    ("NPO", r"\bNPO\b|בצום", [
        ("לוודא צום - ללא אוכל ושתייה", STAT),
        ("עירוי נוזלים תחזוקה", URGENT),
        ("עדכן צוות סיעוד על NPO", STAT),
    ]),
    # Surgery / pre-op
    ("טרום ניתוח", r"ניתוח|\bpre[-\s]?op\b", [
        ("בדיקות דם טרום ניתוח (CBC, כימיה, קרישה)", STAT),
        ("חתימת הסכמה לניתוח", URGENT),
        ("התייעצות הרדמה", URGENT),
        ("א.ק.ג טרום ניתוח", URGENT),
        ("בדיקת אשלגן לפני ניתוח", URGENT),
    ]),
    # Blood transfusion
    ("עירוי דם", r"עירוי דם|מנת דם|\bPRBCs?\b", [
        ("סוג ושתלב (T&C)", STAT),
        ("הכנת גישה ורידית", URGENT),
        ("ניטור סימנים חיוניים כל 15 דק' בשעה הראשונה", STAT),
        ("בדיקת Hb לאחר העירוי", MORNING),
    ]),
    # Diabetes
    ("סוכרת", r"סוכרת|אינסולין|\bDM\b|\bIDDM\b|\bNIDDM\b", [
        ("מדידת סוכר לפני 3 ארוחות ולפני שינה", MORNING),
        ("בדיקת HbA1c אם חסר", ROUTINE),
        ("בדיקת כפות רגליים", ROUTINE),
    ]),
    # Fall risk
    ("סיכון נפילה", r"נפילה|נפילות|\bFALL\b", [
        ("מעקה מיטה מורם", STAT),
        ("פעמון בהישג יד", STAT),
        ("הצמדת שטיח אנטי-סליפ", URGENT),
        ("סקירת תרופות המגבירות סיכון נפילה", MORNING),
    ]),
    # Bladder scan
    ("BS (Bladder Scan)", r"\bBS\b|\bBladder\s*Scan\b|בלדר\s*סקאן|סריקה\s*של\s*שלפוחית", [
        ("BS (Bladder Scan)", ROUTINE),
    ]),
    # Isolation
    ("בידוד", r"בידוד|\bISO\b|\bMRSA\b|\bVRE\b|\bESBL\b|\bC[.\-]?\s?DIFF\b", [
        ("שילוט בידוד על הדלת", STAT),
        ("ציוד מגן אישי בכניסה (כפפות, חלוק)", STAT),
        ("הנחיית צוות וביקור משפחה על נהלי בידוד", URGENT),
    ]),
    # Urinary catheter
    ("קטטר", r"קטטר|\bcatheter\b|פולי\b", [
        ("בדיקת צורך בהמשך קטטר (הסרה מוקדמת אם אפשר)", MORNING),
        ("תיעוד כמות שתן בטבלת I&O", ROUTINE),
    ]),
    # AKI / renal
    ("AKI", r"\bAKI\b|אי ספיקת כליות|כשל כלייתי|קריאטינין|\bcreatinine\b", [
        ("מעקב קריאטינין ואלקטרוליטים יומי", MORNING),
        ("הסרת תרופות נפרוטוקסיות (NSAIDs, אמינוגליקוזידים)", URGENT),
        ("מדידת I&O מדויקת", URGENT),
        ("שקילת מטופל יומית", MORNING),
        ("בדיקת אשלגן דחופה", URGENT),
    ]),
    # Contrast imaging
    ("חומר ניגוד", r"חומר ניגוד|\bCT\b עם חומר|\bcontrast\b", [
        ("בדיקת קריאטינין לפני מתן חומר ניגוד", URGENT),
        ("הידרציה IV לפני ואחרי (אם כליות לא תקינות)", URGENT),
        ("הפסקת מטפורמין 48 שעות", URGENT),
        ("בדיקת קריאטינין 48 שעות לאחר חומר ניגוד", ROUTINE),
    ]),
    # Delirium
    ("דליריום", r"דליריום|בלבול|מבולבל|אי שקט|אגיטציה|\bdelirium\b|\bencephalopathy\b", [
        ("CAM score - הערכת דליריום", URGENT),
        ("בדיקת סיבה: זיהום, תרופות, כאב, שתן", URGENT),
        ("הפחתת תרופות אנטיכולינרגיות ובנזו", URGENT),
        ("הימנעות מקשירה - ניסיון מוגבר", URGENT),
        ("ריאוריינטציה: אור טבעי, שעון, פעילות", ROUTINE),
        ("בדיקת שמיעה וראייה (עזרים זמינים?)", ROUTINE),
    ]),
    # Pressure ulcer
    ("פצע לחץ", r"פצע לחץ|פצעי לחץ|כיב לחץ|פצע עריסה|\beschar\b|\bdecubitus\b", [
        ("הפניה לאחות פצעים", URGENT),
        ("החלפת תנוחה כל 2 שעות", URGENT),
        ("מזרן למניעת פצעי לחץ", URGENT),
        ("הערכת תזונה - התייעצות דיאטנית", MORNING),
    ]),
    # DVT / anticoagulation
    ("קרישיות", r"\bDVT\b|פקק דם|קרישיות|\bLMWH\b|קלקסן|\banticoag\w*|נוגד קרישה|נוגדי קרישה", [
        ("בדיקת CBC + קואגולציה", MORNING),
        ("וידוא מינון LMWH מותאם לכליות (eGFR)", URGENT),
        ("הנחיות למניעת DVT: גרביים, מוביליזציה", MORNING),
    ]),
    # Heart failure
    ("אי ספיקת לב", r"אי ספיקת לב|\bCHF\b|\bheart failure\b|קוצר נשימה|\bdyspnea\b|\bedema\b|בצקת", [
        ("שקילה יומית ותיעוד", MORNING),
        ("מדידת I&O יומית", MORNING),
        ("בדיקת אלקטרוליטים (K, Mg) בגלל משתנים", MORNING),
        ("בדיקת קריאטינין (תחת פוראסמיד)", MORNING),
    ]),
    # Pneumonia / infection
    ("זיהום", r"דלקת ריאות|\bpneumonia\b|זיהום|\bsepsis\b|\bseptic\b|ספסיס|חום(?!ר)|\bfever\b", [
        ("תרבית דם לפני אנטיביוטיקה (אם עדיין לא)", STAT),
        ("בדיקת CRP + WBC + PCT", MORNING),
        ("ניטור חום כל 4 שעות", URGENT),
        ("בדיקת תרבית שתן אם חום ללא מקור", URGENT),
    ]),
    # Stroke / neuro
    ("שבץ", r"שבץ|\bstroke\b|\bCVA\b|\bTIA\b|נוירולוגי", [
        ("הערכת בליעה לפני אכילה/שתייה", URGENT),
        ("מניעת נפילה - ניטור מוגבר", URGENT),
        ("א.ק.ג לזיהוי AF", URGENT),
        ("ייעוץ קלינאי תקשורת", MORNING),
    ]),
    # Malnutrition / feeding tube
    ("תזונה", r"תת תזונה|\bmalnutrition\b|\bNGT\b|\bPEG\b|זונדה|הזנה|בליעה", [
        ("הפניה לדיאטנית קלינית", MORNING),
        ("הערכת בליעה (אם רלוונטי)", URGENT),
        ("מדידת משקל שבועית", ROUTINE),
        ("בדיקת albumin + prealbumin", ROUTINE),
    ]),
    # Hyperkalemia
    ("היפרקלמיה", r"היפרקלמיה|\bhyperkalemia\b|אשלגן גבוה", [
        ("א.ק.ג דחוף", STAT),
        ("בדיקת אשלגן חוזרת", STAT),
        ("Calcium gluconate IV אם שינויים ב-ECG", STAT),
        ("הפסקת ACE/ARB ו-K-sparers", URGENT),
    ]),
    # Hyponatremia
    ("היפונתרמיה", r"היפונתרמיה|\bhyponatremia\b|נתרן נמוך", [
        ("הגבלת נוזלים (אם SIADH)", URGENT),
        ("מעקב נתרן כל 6-8 שעות", URGENT),
        ("בדיקת אוסמולריות שתן ודם", URGENT),
    ]),
    # Hypoglycemia
    ("היפוגליקמיה", r"היפוגליקמיה|\bhypoglycemia\b|סוכר נמוך", [
        ("מדידת סוכר כל שעה עד יציבות", STAT),
        ("D50 IV אם אין גישה ורידית - גלוקגון IM", STAT),
        ("בדיקת סיבה: מינון אינסולין, NPO, כליות", URGENT),
    ]),
    # IV antibiotics
    ("אנטיביוטיקה IV", r"מרופנם|\bmeropenem\b|פיפרציל|\btazobactam\b|ונקומיצין|\bvancomycin\b|אנטיביוטיקה IV", [
        ("וידוא גישה ורידית תקינה", URGENT),
        ("בדיקת רמות vancomycin אם רלוונטי", MORNING),
        ("בדיקת קריאטינין תחת טיפול נפרוטוקסי", MORNING),
    ]),
    # DNR / DNI
    ("DNR/DNI", r"\bDNR\b|\bDNI\b", [
        ("וידוא טופס DNR חתום בתיק", URGENT),
        ("עדכון צוות סיעוד על הנחיות DNR/DNI", URGENT),
    ]),
    # Warfarin / INR
    ("וורפרין", r"וורפרין|קומדין|\bwarfarin\b|\bcoumadin\b|\bINR\b", [
        ("בדיקת INR יומי עד טווח טיפולי", MORNING),
        ("התאמת מינון לפי INR", MORNING),
    ]),
    # Hypokalemia
    ("היפוקלמיה", r"אשלגן נמוך|היפוקלמיה|\bhypokalemia\b|תיקון אשלגן", [
        ("מתן אשלגן PO/IV לפי פרוטוקול", URGENT),
        ("מעקב אשלגן כל 4-6 שעות", URGENT),
        ("א.ק.ג אם K < 3.0", URGENT),
    ]),
    # Physiotherapy / rehab
    ("שיקום", r"פיזיותרפיה|ריפוי בעיסוק|שיקום|\bmobiliz\w*|מוביליזציה", [
        ("הפניה לפיזיותרפיה", MORNING),
        ("הפניה לריפוי בעיסוק", ROUTINE),
        ("יעד: מוביליזציה מוקדמת פעמיים ביום", MORNING),
    ]),
    # Social work
    ("עובד סוציאלי", r"עובד סוציאלי|עו\"ס|\bsocial work\w*|הסתגלות|בית אבות|מוסד", [
        ("הפניה לעובד סוציאלי", MORNING),
        ("שיחת משפחה על תכנית שחרור", ROUTINE),
    ]),
    # Pain management
    ("ניהול כאב", r"כאב חזק|כאב בלתי נשלט|\bNRS\s*[789]\b|\bVAS\s*[789]\b|\bpain control\b", [
        ("הערכת כאב NRS כל 4 שעות", URGENT),
        ("ייעוץ רפואת כאב", MORNING),
        ("בדיקת טיפול נוכחי ואופטימיזציה", URGENT),
    ]),
    # Dementia
    ("דמנציה", r"דמנציה|אלצהיימר|\bdementia\b|\balzheimer\w*|ירידה קוגניטיבית", [
        ("הערכת מצב קוגניטיבי (MMSE/MoCA בהתאם)", ROUTINE),
        ("מניעת דליריום: ריאוריינטציה, אור, שגרה", MORNING),
        ("מניעת נפילה - ניטור מוגבר", URGENT),
    ]),
    # Hip fracture / osteoporosis
    ("שבר ירך / אוסטאופורוזיס", r"שבר ירך|\bhip fracture\b|אוסטאופורוזיס|\bosteoporosis\b", [
        ("וידוא מתן ויטמין D + סידן", MORNING),
        ("הפניה לאורתופד אם נדרש", URGENT),
        ("מניעת DVT: LMWH + גרביים", URGENT),
    ]),
]


class RuleEngine:
    """
    Evaluates the rule table against a patient's free-text fields.

    Usage:
        engine = RuleEngine()
        generated = engine.apply(entry)
        labels = engine.matching_labels("NPO | משתחרר היום")
    """

    def __init__(self, table: Optional[List[Tuple[str, str, List[Tuple[str, str]]]]] = None):
        """Compile the rule table once."""
        self.rules: List[TriggerRule] = [
            TriggerRule(
                label=label,
                pattern=re.compile(pattern, re.IGNORECASE),
                templates=tuple(templates),
            )
            for label, pattern, templates in (table if table is not None else RULE_TABLE)
        ]

        logger.debug(
            "RuleEngine initialized",
            extra={
                "rules": len(self.rules),
                "templates": sum(len(r.templates) for r in self.rules),
            }
        )

    @staticmethod
    def combined_text(entry: PatientEntry) -> str:
        """Status notes, flags, diagnosis and explicit task texts joined by spaces."""
        parts: List[str] = [
            *entry.status,
            *entry.flags,
            entry.diagnosis or "",
            *(t.text for t in entry.tasks),
        ]
        return " ".join(parts)

    def matching_rules(self, text: str) -> List[TriggerRule]:
        """All rules whose trigger matches text, in table order."""
        if not text or not text.strip():
            return []
        return [rule for rule in self.rules if rule.matches(text)]

    def matching_labels(self, text: str) -> List[str]:
        return [rule.label for rule in self.matching_rules(text)]

    def apply(self, entry: PatientEntry) -> List[Task]:
        """
        Generate follow-up tasks for a patient.

        Args:
            entry: Patient record; only its text fields are read

        Returns:
            One generated Task per template of every matching rule
        """
        fired = self.matching_rules(self.combined_text(entry))
        generated: List[Task] = []

        for rule in fired:
            for text, urgency in rule.templates:
                generated.append(
                    Task(
                        id=new_id("gen-"),
                        text=text,
                        urgency=urgency,
                        source=TaskSource.GENERATED,
                        done=False,
                        done_time=None,
                        time=None,
                        confidence=settings.generated_task_confidence,
                        generated_from=rule.label,
                    )
                )

        if fired and settings.rule_audit_logging:
            logger.info(
                "Rules fired",
                extra={
                    "patient_id": entry.id,
                    "rules": [rule.label for rule in fired],
                    "generated_tasks": len(generated),
                }
            )

        return generated


# =============================================================================
# MODULE-LEVEL SINGLETON
# =============================================================================

_engine_instance: Optional[RuleEngine] = None


def get_engine() -> RuleEngine:
    """Get or create the singleton RuleEngine instance."""
    global _engine_instance
    if _engine_instance is None:
        _engine_instance = RuleEngine()
    return _engine_instance


def apply_rules(entry: PatientEntry) -> List[Task]:
    """
    Convenience function to run the rule table for one patient.

    Args:
        entry: Patient record

    Returns:
        Generated tasks (fresh ids on every call)
    """
    return get_engine().apply(entry)
