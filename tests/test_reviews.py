import pytest

from database import REVIEWS, SERVICES, USERS, to_object_id
from reviews import rating_distribution, recompute_aggregate, round_rating


class TestAggregate:
    @pytest.mark.parametrize(
        "ratings,expected",
        [
            ([], (0.0, 0)),
            ([5], (5.0, 1)),
            ([5, 4], (4.5, 2)),
            ([4, 4, 5], (4.3, 3)),
            ([5, 5, 4, 3], (4.3, 4)),
            ([1, 2], (1.5, 2)),
        ],
    )
    def test_mean_to_one_decimal(self, ratings, expected):
        assert recompute_aggregate(ratings) == expected

    def test_rounds_half_up(self):
        assert round_rating(4.25) == 4.3
        assert round_rating(4.35) == 4.4
        assert round_rating(2.04) == 2.0

    def test_distribution_has_every_star(self):
        assert rating_distribution([5, 5, 3]) == {"5": 2, "4": 0, "3": 1, "2": 0, "1": 0}
        assert rating_distribution([]) == {"5": 0, "4": 0, "3": 0, "2": 0, "1": 0}


@pytest.fixture
def review(client, completed_booking, customer):
    response = client.post(
        "/reviews",
        json={"booking_id": completed_booking["id"], "rating": 5, "comment": "Spotless"},
        headers=customer.headers,
    )
    assert response.status_code == 201, response.text
    return response.json()["data"]


class TestCreateReview:
    def test_review_updates_service_and_provider(self, client, review, service, provider, customer):
        assert review["is_verified"] is True
        assert review["customer"]["name"] == customer.user["name"]

        svc = client.get(f"/services/{service['id']}").json()["data"]
        assert (svc["average_rating"], svc["total_reviews"]) == (5.0, 1)

        profile = client.get(f"/auth/users/{provider.id}").json()["data"]
        assert (profile["average_rating"], profile["total_reviews"]) == (5.0, 1)

    def test_one_review_per_booking(self, client, review, completed_booking, customer):
        response = client.post(
            "/reviews", json={"booking_id": completed_booking["id"], "rating": 1}, headers=customer.headers
        )
        assert response.status_code == 400
        assert response.json()["message"] == "Review already exists for this booking"

    def test_booking_must_be_completed(self, client, booking, customer):
        response = client.post("/reviews", json={"booking_id": booking["id"], "rating": 4}, headers=customer.headers)
        assert response.status_code == 400
        assert response.json()["message"] == "Can only review completed bookings"

    def test_only_the_booking_customer(self, client, completed_booking, signup):
        stranger = signup("customer")
        response = client.post(
            "/reviews", json={"booking_id": completed_booking["id"], "rating": 4}, headers=stranger.headers
        )
        assert response.status_code == 403

    def test_rating_bounds(self, client, completed_booking, customer):
        response = client.post(
            "/reviews", json={"booking_id": completed_booking["id"], "rating": 6}, headers=customer.headers
        )
        assert response.status_code == 400
        assert response.json()["message"] == "Validation failed"


class TestChangeReview:
    def test_update_rating_recomputes(self, client, review, customer, service, db):
        response = client.put(f"/reviews/{review['id']}", json={"rating": 2}, headers=customer.headers)
        assert response.status_code == 200
        assert response.json()["data"]["rating"] == 2
        svc = db[SERVICES].find_one({"_id": to_object_id(service["id"])})
        assert (svc["average_rating"], svc["total_reviews"]) == (2.0, 1)

    def test_delete_resets_to_zero(self, client, review, customer, provider, db):
        response = client.delete(f"/reviews/{review['id']}", headers=customer.headers)
        assert response.status_code == 200
        assert db[REVIEWS].count_documents({}) == 0
        user = db[USERS].find_one({"_id": to_object_id(provider.id)})
        assert (user["average_rating"], user["total_reviews"]) == (0.0, 0)

    def test_others_cannot_touch_it(self, client, review, signup):
        stranger = signup("customer")
        assert client.put(f"/reviews/{review['id']}", json={"rating": 1}, headers=stranger.headers).status_code == 403
        assert client.delete(f"/reviews/{review['id']}", headers=stranger.headers).status_code == 403


class TestReadReviews:
    def test_provider_reviews_include_stats(self, client, review, provider):
        body = client.get(f"/reviews/provider/{provider.id}").json()
        assert body["total"] == 1
        assert body["data"][0]["comment"] == "Spotless"
        assert body["stats"]["average_rating"] == 5.0
        assert body["stats"]["rating_distribution"]["5"] == 1

    def test_provider_reviews_filter_by_rating(self, client, review, provider):
        body = client.get(f"/reviews/provider/{provider.id}", params={"rating": 3}).json()
        assert body["total"] == 0
        assert body["stats"]["total_reviews"] == 1

    def test_service_and_my_reviews(self, client, review, service, customer):
        assert client.get(f"/reviews/service/{service['id']}").json()["total"] == 1
        mine = client.get("/reviews/my-reviews", headers=customer.headers).json()
        assert mine["count"] == 1
        assert mine["data"][0]["service"]["title"] == "cleaning"

    def test_stats_average_detailed_ratings(self, client, completed_booking, customer, provider):
        client.post(
            "/reviews",
            json={
                "booking_id": completed_booking["id"],
                "rating": 4,
                "detailed_ratings": {"quality": 5, "punctuality": 3},
            },
            headers=customer.headers,
        )
        data = client.get(f"/reviews/stats/{provider.id}").json()["data"]
        assert data["average_rating"] == 4.0
        assert data["detailed_ratings"] == {"quality": 5.0, "punctuality": 3.0, "communication": 0.0, "value": 0.0}

    def test_bad_provider_id(self, client):
        response = client.get("/reviews/provider/nope")
        assert response.status_code == 400
        assert response.json()["message"] == "Invalid provider_id format"
