"""
Factor Classification Tests
===========================

INVARIANTS TESTED:
1. Keyword hits score 1, example phrases score 2
2. Confidence thresholds: >= 5 high, >= 2 medium
3. Validation only ever adds factors to a model classification
4. Heuristic impact score is capped at 100
"""

from dataclasses import replace

from moments.analysis import FactorClassifier
from moments.analysis.factors import combined_confidence
from moments.contracts import ConfidenceLevel, MomentClassification

from tests.fixtures import make_moment


class TestFactorDefinitions:

    def test_ten_factors_split_by_category(self):
        classifier = FactorClassifier()
        micro = [d.factor for d in classifier.get_factors_by_category("micro")]
        macro = [d.factor for d in classifier.get_factors_by_category("macro")]
        assert micro == ["company", "competition", "partners", "customers"]
        assert len(macro) == 6
        assert "supply_chain" in macro


class TestClassifyContent:

    def test_partnership_is_medium_partners(self):
        result = FactorClassifier().classify_content("OpenAI signed a partnership")
        assert result.micro_factors == ("partners",)
        assert result.macro_factors == ()
        assert result.confidence is ConfidenceLevel.MEDIUM
        assert "partnership" in result.keywords

    def test_no_indicators(self):
        result = FactorClassifier().classify_content("zzz qqq")
        assert result.all_factors == ()
        assert result.confidence is ConfidenceLevel.LOW
        assert result.reasoning == "No clear factor indicators found in content"

    def test_examples_weigh_double(self):
        matches = FactorClassifier().match_factors("Chip shortages caused manufacturing delays")
        assert matches[0].factor == "supply_chain"
        # two examples (2 each) and three keywords
        assert matches[0].score == 7

    def test_strongest_factor_first(self):
        result = FactorClassifier().classify_content("Chip shortages caused manufacturing delays")
        assert result.macro_factors == ("supply_chain", "technology")
        assert result.confidence is ConfidenceLevel.HIGH
        assert result.reasoning.startswith("Classified based on detected factors: supply_chain")

    def test_case_insensitive(self):
        lower = FactorClassifier().classify_content("strict privacy compliance rules")
        upper = FactorClassifier().classify_content("STRICT PRIVACY COMPLIANCE RULES")
        assert lower.macro_factors == upper.macro_factors == ("regulation",)

    def test_keywords_match_as_substrings(self):
        # "gdpr" contains the economic keyword "gdp"
        result = FactorClassifier().classify_content("gdpr compliance")
        assert result.macro_factors == ("regulation", "economic")


class TestValidateClassification:

    def test_detected_factors_are_added(self):
        moment = replace(make_moment(), content="Regulators drafted a new privacy law")
        merged = FactorClassifier().validate_classification(moment)

        assert merged.micro_factors[:2] == ("company", "partners")
        assert merged.macro_factors[0] == "technology"
        assert "regulation" in merged.macro_factors
        assert "Additional analysis" in merged.reasoning

    def test_existing_keywords_kept_first(self):
        moment = replace(make_moment(), content="A privacy law")
        merged = FactorClassifier().validate_classification(moment)
        assert merged.keywords[:2] == ("llm", "partnership")
        assert "privacy" in merged.keywords


class TestImpactScore:

    def test_base_plus_factors_and_entities(self):
        moment = make_moment(micro=("company",), macro=(), keywords=(),
                             companies=("A",), technologies=())
        # 50 + 15 micro, medium multiplier, + 2 per entity
        assert FactorClassifier().calculate_impact_score(moment) == 67

    def test_confidence_multiplier(self):
        moment = make_moment(micro=("company",), macro=(), keywords=(),
                             companies=(), technologies=())
        high = replace(moment, classification=replace(moment.classification,
                                                       confidence=ConfidenceLevel.HIGH))
        assert FactorClassifier().calculate_impact_score(high) == 78

    def test_capped_at_100(self):
        moment = make_moment(
            micro=("company", "competition", "partners", "customers"),
            macro=("economic", "technology"),
        )
        assert FactorClassifier().calculate_impact_score(moment) == 100


class TestCombinedConfidence:

    def test_average_rounds_to_medium(self):
        assert combined_confidence(ConfidenceLevel.HIGH, ConfidenceLevel.LOW) is ConfidenceLevel.MEDIUM

    def test_high_and_medium_is_high(self):
        assert combined_confidence(ConfidenceLevel.HIGH, ConfidenceLevel.MEDIUM) is ConfidenceLevel.HIGH

    def test_low_pair(self):
        classification = MomentClassification(confidence=ConfidenceLevel.LOW)
        assert combined_confidence(classification.confidence, ConfidenceLevel.LOW) is ConfidenceLevel.LOW
