from prf.schemas import FormInfo, InputInfo, LinkInfo, PageContent
from prf.scoring.text_signals import TextSignalScorer, build_corpus, text_confidence

scorer = TextSignalScorer()
URL = "https://example.com/"


def test_urgency_only():
    page = PageContent(text_sample="urgent immediately account suspended")
    result = scorer.score(page, URL)
    assert result.score == 25
    assert result.indicators == ["Urgent or threatening language detected"]
    assert 0.1 <= result.confidence <= 0.95


def test_single_urgency_phrase_is_not_enough():
    assert scorer.score(PageContent(text_sample="this is urgent"), URL).score == 0


def test_security_claims():
    page = PageContent(text_sample="a verified and encrypted page, fully certified")
    result = scorer.score(page, URL)
    assert "Excessive security or verification claims" in result.indicators


def test_brand_mismatch_in_title_and_text():
    page = PageContent(title="Netflix account")
    assert any(i.startswith("Brand impersonation") for i in scorer.score(page, URL).indicators)

    twice = PageContent(text_sample="your amazon order. amazon support")
    assert scorer.score(twice, URL).score == 30
    assert scorer.score(twice, "https://www.amazon.com/").score == 0

    once = PageContent(text_sample="we also sell on amazon")
    assert scorer.score(once, URL).score == 0


def test_poor_language_quality():
    page = PageContent(text_sample="dear valued user, kindly revert with your details")
    result = scorer.score(page, URL)
    assert result.indicators == ["Poor language quality or inconsistent terminology"]
    assert result.score == 15


def test_corpus_includes_links_and_form_strings():
    page = PageContent(
        links=[LinkInfo(text=" Reset Password ")],
        forms=[FormInfo(inputs=[InputInfo(label="Card Number", placeholder="CVV", name="cc")])],
    )
    corpus = build_corpus(page)
    assert "reset password" in corpus
    assert "card number" in corpus and "cvv" in corpus


def test_analysis_exposes_patterns():
    page = PageContent(title="PayPal", text_sample="urgent: verify immediately")
    analysis = scorer.analyze(page, URL)
    assert "urgent" in analysis["patterns"]
    assert analysis["brand_mentions"] == ["paypal"]
    assert analysis["brand_mismatch"] is True


def test_no_text_is_no_opinion():
    assert scorer.score(PageContent(), URL) is None
    assert scorer.score(None, URL) is None


def test_confidence_bounds():
    assert text_confidence(0, 0, 0) == 0.1
    assert text_confidence(100, 5, 1000) == 0.95
