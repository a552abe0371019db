"""
Question set export (JSON and CSV) and grouping helpers.
"""
import csv
import io
import json
from typing import Dict, List

from processor.question_engine import Question, QuestionSet

CSV_HEADERS = [
    'ID',
    'Question',
    'Type',
    'Level',
    'Confidence',
    'Entity IDs',
    'Source Chunk IDs',
    'Source Page IDs',
]

LIST_SEPARATOR = '; '


def to_json(question_set: QuestionSet) -> str:
    """Export the question set verbatim as indented JSON."""
    return json.dumps(question_set.to_dict(), indent=2, ensure_ascii=False)


def to_csv(question_set: QuestionSet) -> str:
    """
    Export questions as CSV with fixed columns.

    Multi-valued fields are joined with '; ' and confidence is printed with
    two decimals. Quoting follows RFC 4180.
    """
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator='\n')
    writer.writerow(CSV_HEADERS)
    for question in question_set.questions:
        writer.writerow([
            question.id,
            question.question_text,
            question.question_type.value,
            question.level.value,
            f"{question.answer_confidence:.2f}",
            LIST_SEPARATOR.join(question.entity_ids),
            LIST_SEPARATOR.join(question.source_chunk_ids),
            LIST_SEPARATOR.join(question.source_page_ids),
        ])
    return buffer.getvalue()


def group_by_type(questions: List[Question]) -> Dict[str, List[Question]]:
    grouped: Dict[str, List[Question]] = {}
    for question in questions:
        grouped.setdefault(question.question_type.value, []).append(question)
    return grouped


def group_by_level(questions: List[Question]) -> Dict[str, List[Question]]:
    grouped: Dict[str, List[Question]] = {}
    for question in questions:
        grouped.setdefault(question.level.value, []).append(question)
    return grouped
