import requests


class StubResponse:
    """Just enough of requests.Response for the code under test."""

    def __init__(self, status_code=200, json_data=None, text="", url=None):
        self.status_code = status_code
        self._json = json_data
        self.text = text
        self.url = url

    def json(self):
        if self._json is None:
            raise ValueError("No JSON body")
        return self._json

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error", response=self)


class Recorder:
    """Callable that replays canned responses and remembers the calls."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def __call__(self, url, **kwargs):
        self.calls.append((url, kwargs))
        if not self.responses:
            raise AssertionError(f"Unexpected request to {url}")
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(url, **kwargs)
        return response


def scraper_content(**overrides):
    """A parsed Amazon product as returned by the scraper API."""
    content = {
        "asin": "B08N5WRWNW",
        "url": "https://www.amazon.com.au/dp/B08N5WRWNW",
        "title": "Echo Dot (4th Gen)   Smart speaker",
        "brand": "Amazon",
        "price": 49.0,
        "currency": "AUD",
        "stock": "Only 3 left in stock",
        "rating": 4.7,
        "reviews_count": 1200,
        "images": ["https://img/1.jpg", "not-a-url", "https://img/2.jpg"],
        "bullet_points": "Better sound\n\nVoice control",
        "category": [{"ladder": [{"name": "Electronics"}, {"name": "Speakers"}]}],
        "delivery": [{"type": "FREE delivery", "date": "Tomorrow"}],
    }
    content.update(overrides)
    return content


def api_response(content):
    return StubResponse(200, {"results": [{"content": content}]})
