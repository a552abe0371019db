"""
Question generation from a site report snapshot.

Questions are generated at four levels (chunk, page, entity, graph), each one
citing the chunks, pages or entities it can be answered from. Untraceable
questions are rejected on insertion; near-duplicates are removed and the
survivors get a small confidence boost for corroborating sources.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from processor.report_assembler import SiteReport
from storage.models import EntityType, utc_now
from utils.config import QuestionConfig
from utils.logger import setup_logger

logger = setup_logger(__name__)

PROCESS_INDICATORS = (
    'how to',
    'step',
    'first',
    'then',
    'next',
    'finally',
    'process',
    'procedure',
    'follow these',
    'in order to',
)

DEFINABLE_TYPES = {EntityType.ORGANIZATION.value, EntityType.SERVICE.value, EntityType.PRODUCT.value}
CAPABILITY_TYPES = {EntityType.ORGANIZATION.value, EntityType.SERVICE.value}

GUIDANCE = {
    'how_to_answer': (
        'Answer only from provided data in the site report. '
        'Do not use external knowledge or make assumptions.'
    ),
    'allowed_sources': ['pages', 'chunks', 'entities', 'relationships'],
    'forbidden': ['external knowledge', 'assumptions', 'speculation'],
}


class QuestionType(str, Enum):
    DEFINITION = "DEFINITION"
    HOW_TO = "HOW_TO"
    CAPABILITY = "CAPABILITY"
    RELATIONSHIP = "RELATIONSHIP"
    COVERAGE = "COVERAGE"
    COMPARISON = "COMPARISON"
    GAP = "GAP"


class QuestionLevel(str, Enum):
    CHUNK = "CHUNK"
    PAGE = "PAGE"
    ENTITY = "ENTITY"
    GRAPH = "GRAPH"


@dataclass
class Question:
    id: str
    question_text: str
    question_type: QuestionType
    level: QuestionLevel
    entity_ids: List[str] = field(default_factory=list)
    source_chunk_ids: List[str] = field(default_factory=list)
    source_page_ids: List[str] = field(default_factory=list)
    answer_confidence: float = 0.0

    def is_traceable(self) -> bool:
        """Cites at least one chunk, page or entity; graph-level questions always pass."""
        return bool(
            self.source_chunk_ids
            or self.source_page_ids
            or self.entity_ids
            or self.level == QuestionLevel.GRAPH
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'question_text': self.question_text,
            'question_type': self.question_type.value,
            'level': self.level.value,
            'entity_ids': list(self.entity_ids),
            'source_chunk_ids': list(self.source_chunk_ids),
            'source_page_ids': list(self.source_page_ids),
            'answer_confidence': self.answer_confidence,
        }


@dataclass
class QuestionSet:
    site: Dict[str, str]
    report_metadata: Dict[str, Any]
    questions: List[Question]
    guidance: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'site': dict(self.site),
            'report_metadata': dict(self.report_metadata),
            'questions': [q.to_dict() for q in self.questions],
            'guidance': dict(self.guidance),
        }


def word_similarity(text1: str, text2: str) -> float:
    """Jaccard similarity of the lowercased, whitespace-split word sets."""
    words1 = set(text1.lower().split())
    words2 = set(text2.lower().split())
    union = words1 | words2
    if not union:
        return 0.0
    return len(words1 & words2) / len(union)


def has_process_indicators(text: str) -> bool:
    lower = text.lower()
    return any(indicator in lower for indicator in PROCESS_INDICATORS)


class QuestionEngine:
    """Generates a QuestionSet from one SiteReport."""

    def __init__(self, report: SiteReport, config: Optional[QuestionConfig] = None):
        self.report = report
        self.config = config or QuestionConfig()
        self.questions: Dict[str, Question] = {}
        self._counter = 0
        self._pages_by_url = {page.url: page for page in report.pages}

    def generate_questions(self) -> QuestionSet:
        """
        Generate, deduplicate and score all questions.

        Returns:
            QuestionSet ready for export
        """
        logger.info(f"Starting question generation for {self.report.site.url}")
        self.questions = {}
        self._counter = 0

        self._generate_chunk_questions()
        self._generate_page_questions()
        self._generate_entity_questions()
        self._generate_graph_questions()

        self._deduplicate()
        self._score_confidence()

        questions = list(self.questions.values())
        logger.info(f"Question generation complete: {len(questions)} questions")

        return QuestionSet(
            site={'url': self.report.site.url, 'domain': self.report.site.domain},
            report_metadata={
                'generated_at': utc_now(),
                'total_pages': len(self.report.pages),
                'total_entities': len(self.report.entities),
                'total_questions': len(questions),
            },
            questions=questions,
            guidance=GUIDANCE,
        )

    def _add_question(
        self,
        text: str,
        question_type: QuestionType,
        level: QuestionLevel,
        confidence: float,
        entity_ids: Optional[List[str]] = None,
        chunk_ids: Optional[List[str]] = None,
        page_ids: Optional[List[str]] = None,
    ) -> None:
        self._counter += 1
        question = Question(
            id=f"q-{self._counter}",
            question_text=text,
            question_type=question_type,
            level=level,
            entity_ids=entity_ids or [],
            source_chunk_ids=chunk_ids or [],
            source_page_ids=page_ids or [],
            answer_confidence=confidence,
        )
        if not question.is_traceable():
            logger.warning(f"Question failed traceability check, skipping: {text}")
            return
        self.questions[question.id] = question

    def _generate_chunk_questions(self) -> None:
        for chunk in self.report.chunks:
            if len(chunk.text) < self.config.min_chunk_length:
                continue
            page = self._pages_by_url.get(chunk.page_url)
            if page is None:
                continue

            if chunk.heading_path:
                topic = chunk.heading_path[-1]
                if topic and len(topic) > 3:
                    self._add_question(
                        f'What does this section explain about "{topic}"?',
                        QuestionType.DEFINITION, QuestionLevel.CHUNK, 0.8,
                        chunk_ids=[chunk.id], page_ids=[page.id],
                    )

            if has_process_indicators(chunk.text):
                self._add_question(
                    'How does this process work according to the content?',
                    QuestionType.HOW_TO, QuestionLevel.CHUNK, 0.7,
                    chunk_ids=[chunk.id], page_ids=[page.id],
                )

    def _generate_page_questions(self) -> None:
        for page in self.report.pages:
            if not page.title or len(page.title) < 3:
                continue

            self._add_question(
                f'What is the purpose of the page titled "{page.title}"?',
                QuestionType.DEFINITION, QuestionLevel.PAGE, 0.9,
                page_ids=[page.id],
            )
            if page.entity_count > 0:
                self._add_question(
                    f'What topics are covered on "{page.title}"?',
                    QuestionType.COVERAGE, QuestionLevel.PAGE, 0.85,
                    page_ids=[page.id],
                )

    def _generate_entity_questions(self) -> None:
        for entity in self.report.entities:
            page_ids = [self._pages_by_url[url].id for url in entity.pages_mentioned if url in self._pages_by_url]

            if entity.type in DEFINABLE_TYPES:
                self._add_question(
                    f'What is {entity.name}?',
                    QuestionType.DEFINITION, QuestionLevel.ENTITY, 0.9,
                    entity_ids=[entity.id], page_ids=page_ids,
                )
            if entity.type in CAPABILITY_TYPES:
                self._add_question(
                    f'What does {entity.name} offer or provide?',
                    QuestionType.CAPABILITY, QuestionLevel.ENTITY, 0.85,
                    entity_ids=[entity.id], page_ids=page_ids,
                )
            if entity.relations_count > 0:
                self._add_question(
                    f'How is {entity.name} related to other entities on the site?',
                    QuestionType.RELATIONSHIP, QuestionLevel.ENTITY, 0.8,
                    entity_ids=[entity.id], page_ids=page_ids,
                )

    def _generate_graph_questions(self) -> None:
        by_type: Dict[str, List[str]] = {}
        for entity in self.report.entities:
            by_type.setdefault(entity.type, []).append(entity.id)

        for entity_type, entity_ids in by_type.items():
            if len(entity_ids) > 1:
                self._add_question(
                    f'What {entity_type.lower()}s are mentioned on this website?',
                    QuestionType.COVERAGE, QuestionLevel.GRAPH, 0.95,
                    entity_ids=entity_ids,
                )

        if self.report.relationships:
            self._add_question(
                'What are the key relationships between entities on this site?',
                QuestionType.RELATIONSHIP, QuestionLevel.GRAPH, 0.85,
            )

        gap_pages = [page.id for page in self.report.pages if page.entity_count == 0]
        if gap_pages:
            self._add_question(
                'What pages have limited structured information?',
                QuestionType.GAP, QuestionLevel.GRAPH, 0.9,
                page_ids=gap_pages,
            )

        organizations = by_type.get(EntityType.ORGANIZATION.value, [])
        if len(organizations) > 1:
            self._add_question(
                'What organizations are mentioned and how do they differ?',
                QuestionType.COMPARISON, QuestionLevel.GRAPH, 0.75,
                entity_ids=list(organizations),
            )

    def _deduplicate(self) -> None:
        """Drop the lower-confidence question of every near-duplicate pair; ties drop the later one."""
        questions = list(self.questions.values())
        removed = set()

        for i, first in enumerate(questions):
            if first.id in removed:
                continue
            for second in questions[i + 1:]:
                if second.id in removed:
                    continue
                similarity = word_similarity(first.question_text, second.question_text)
                if similarity > self.config.similarity_threshold:
                    if first.answer_confidence >= second.answer_confidence:
                        removed.add(second.id)
                    else:
                        removed.add(first.id)
                        break

        for question_id in removed:
            del self.questions[question_id]
        logger.info(f"Deduplicated questions: {len(removed)} removed")

    def _score_confidence(self) -> None:
        boost = self.config.confidence_boost
        for question in self.questions.values():
            confidence = question.answer_confidence
            if len(question.source_chunk_ids) > 1:
                confidence += boost
            if len(question.source_page_ids) > 1:
                confidence += boost
            if question.entity_ids:
                confidence += boost
            question.answer_confidence = min(round(confidence, 4), 1.0)
