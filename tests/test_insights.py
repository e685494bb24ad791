from insights import MONTHLY_FALLBACK, WEEKLY_FALLBACK, InsightGenerator, format_amount
from stats import PeriodStats


class FakeClient:
    def __init__(self, reply=None, error=None):
        self.reply = reply
        self.error = error
        self.prompts = []

    def generate(self, contents):
        self.prompts.append(contents)
        if self.error:
            raise self.error
        return self.reply


STATS = PeriodStats(
    total_income=5_000_000,
    total_expenses=1_234_550,
    by_category={"food": 734_550, "travel": 500_000},
    transaction_count=12,
)


def test_format_amount():
    assert format_amount(123_450) == "₹1,234.50"
    assert format_amount(-500, "$") == "-$5.00"


def test_monthly_uses_model_output_and_caps_at_three():
    client = FakeClient('```json\n["one", "two", "three", "four"]\n```')
    insights = InsightGenerator(client).monthly(STATS, "May 2025")

    assert insights == ["one", "two", "three"]
    prompt = client.prompts[0]
    assert "May 2025" in prompt
    assert "₹50,000.00" in prompt
    assert "food: ₹7,345.50" in prompt


def test_falls_back_when_client_raises():
    client = FakeClient(error=RuntimeError("quota exceeded"))
    assert InsightGenerator(client).monthly(STATS, "May 2025") == MONTHLY_FALLBACK
    assert InsightGenerator(client).weekly(STATS, "Week of May 05, 2025") == WEEKLY_FALLBACK


def test_falls_back_on_bad_shapes():
    generator = InsightGenerator(FakeClient('{"insight": "not a list"}'))
    assert generator.weekly(STATS, "w") == WEEKLY_FALLBACK

    generator = InsightGenerator(FakeClient("[]"))
    assert generator.monthly(STATS, "m") == MONTHLY_FALLBACK

    generator = InsightGenerator(FakeClient("no json here"))
    assert generator.monthly(STATS, "m") == MONTHLY_FALLBACK


def test_no_client_uses_fallback():
    insights = InsightGenerator(None).monthly(PeriodStats(), "m")
    assert insights == MONTHLY_FALLBACK
    assert insights is not MONTHLY_FALLBACK


def test_short_monthly_reply_is_topped_up_to_three():
    client = FakeClient('["Dining out doubled this month"]')
    insights = InsightGenerator(client).monthly(STATS, "May 2025")

    assert insights == ["Dining out doubled this month"] + MONTHLY_FALLBACK[:2]


def test_short_weekly_reply_is_kept():
    client = FakeClient('["Groceries were lower than usual"]')
    assert InsightGenerator(client).weekly(STATS, "w") == ["Groceries were lower than usual"]
