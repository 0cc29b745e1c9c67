from prf.schemas import FormInfo, InputInfo, LinkInfo, PageContent
from prf.scoring.content_rules import ContentRuleScorer

scorer = ContentRuleScorer()


def _login_form(action, n_passwords=1):
    return FormInfo(action=action, method="post", is_login_form=True,
                    inputs=[InputInfo(type="text", name="user")] + [InputInfo(type="password")] * n_passwords)


def test_cross_domain_login_without_https():
    page = PageContent(has_https=False, forms=[_login_form("https://collector.example.net/steal")])
    result = scorer.score(page, "http://shop.example.com/login")
    assert result.score == 60
    assert len(result.indicators) == 2
    assert "Login form submits data to external domain (collector.example.net)" in result.indicators


def test_unencrypted_submit_counts_per_form():
    page = PageContent(has_https=True, forms=[_login_form("http://example.com/a"), _login_form("http://example.com/b")])
    result = scorer.score(page, "https://example.com/")
    assert result.score == 60


def test_relative_action_is_same_domain():
    page = PageContent(has_https=True, forms=[_login_form("/session")])
    assert scorer.score(page, "https://example.com/login").score == 0


def test_brand_title_mismatch():
    page = PageContent(title="PayPal - Log In", has_https=True)
    result = scorer.score(page, "https://paypal-account-check.com/")
    assert result.score == 30
    assert scorer.score(page, "https://www.paypal.com/signin").score == 0


def test_security_claims_only_count_when_suspicious():
    calm = PageContent(has_https=True, claims_secure_or_verified=True)
    assert scorer.score(calm, "https://example.com/").score == 0

    suspicious = PageContent(title="Apple ID", has_https=True, claims_secure_or_verified=True)
    result = scorer.score(suspicious, "https://apple-id-verify.example/")
    assert result.score == 40


def test_external_links_and_multiple_passwords():
    links = [LinkInfo(href=f"https://x{i}.example/", is_external=True) for i in range(5)]
    links.append(LinkInfo(href="/home"))
    page = PageContent(has_https=True, links=links, forms=[FormInfo(inputs=[InputInfo(type="password")] * 2)])
    result = scorer.score(page, "https://example.com/")
    assert result.score == 30
    assert "High ratio of external links (83%)" in result.indicators


def test_empty_page_and_no_page():
    assert scorer.score(PageContent(), "https://example.com/").score == 0
    assert scorer.score(None, "https://example.com/") is None


def test_idempotent():
    page = PageContent(title="Chase Bank", has_urgency_language=True, claims_secure_or_verified=True,
                       forms=[_login_form("http://evil.example/p", 2)])
    first = scorer.score(page, "http://chase-alerts.example/")
    second = scorer.score(page, "http://chase-alerts.example/")
    assert first == second
    assert first.score == 30 + 30 + 30 + 30 + 15 + 10 + 15
