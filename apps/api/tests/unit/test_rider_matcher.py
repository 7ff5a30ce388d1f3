import math

import pytest

from app.clock import now_utc
from app.models.order import Order
from app.models.tracking import OrderTracking, TrackingStatus
from app.services.errors import ValidationError
from app.services.rider_matcher import EARTH_RADIUS_M, distance_m, find_nearby

RIDER = (28.6139, 77.2090)
METERS_PER_DEGREE_LAT = EARTH_RADIUS_M * math.pi / 180


def _tracking_north_of_rider(
    db, meters: float, status: TrackingStatus, *, is_active: bool = True
) -> OrderTracking:
    order = Order(user_id="user-1", email="buyer@example.com")
    db.add(order)
    db.flush()
    lat = RIDER[0] + meters / METERS_PER_DEGREE_LAT
    tracking = OrderTracking(
        order_id=order.id,
        customer_id="user-1",
        status=status,
        current_lat=lat,
        current_lng=RIDER[1],
        delivery_lat=28.5355,
        delivery_lng=77.3910,
        delivery_address="Sector 18, Noida",
        restaurant_lat=RIDER[0],
        restaurant_lng=RIDER[1],
        restaurant_address="FoodieFi Restaurant, Delhi",
        estimated_delivery_time=now_utc(),
        is_active=is_active,
    )
    db.add(tracking)
    db.commit()
    return tracking


def test_distance_uses_equatorial_radius():
    one_degree = distance_m(0.0, 0.0, 1.0, 0.0)

    assert one_degree == pytest.approx(METERS_PER_DEGREE_LAT)
    assert distance_m(*RIDER, *RIDER) == 0


def test_returns_pickup_eligible_orders_within_radius_nearest_first(db_session):
    far = _tracking_north_of_rider(db_session, 3000, TrackingStatus.OUT_FOR_DELIVERY)
    near = _tracking_north_of_rider(db_session, 100, TrackingStatus.READY_FOR_PICKUP)
    _tracking_north_of_rider(db_session, 6000, TrackingStatus.READY_FOR_PICKUP)

    matches = find_nearby(db_session, *RIDER, max_distance_m=5000)

    assert [match.tracking.id for match in matches] == [near.id, far.id]
    assert matches[0].distance_m == pytest.approx(100, abs=1)
    assert matches[1].distance_m == pytest.approx(3000, abs=1)


def test_default_radius_comes_from_settings(db_session):
    _tracking_north_of_rider(db_session, 4900, TrackingStatus.READY_FOR_PICKUP)
    _tracking_north_of_rider(db_session, 5100, TrackingStatus.READY_FOR_PICKUP)

    assert len(find_nearby(db_session, *RIDER)) == 1


def test_excludes_orders_not_waiting_for_a_rider(db_session):
    _tracking_north_of_rider(db_session, 50, TrackingStatus.PREPARING)
    _tracking_north_of_rider(db_session, 60, TrackingStatus.DELIVERED, is_active=False)
    _tracking_north_of_rider(db_session, 70, TrackingStatus.READY_FOR_PICKUP, is_active=False)

    assert find_nearby(db_session, *RIDER, max_distance_m=5000) == []


def test_empty_when_nothing_is_tracked(db_session):
    assert find_nearby(db_session, 0.0, 0.0) == []


def test_zero_radius_matches_only_the_exact_point(db_session):
    exact = _tracking_north_of_rider(db_session, 0, TrackingStatus.READY_FOR_PICKUP)
    _tracking_north_of_rider(db_session, 10, TrackingStatus.READY_FOR_PICKUP)

    matches = find_nearby(db_session, *RIDER, max_distance_m=0)

    assert [match.tracking.id for match in matches] == [exact.id]


def test_search_across_the_antimeridian(db_session):
    order = Order(user_id="user-1")
    db_session.add(order)
    db_session.flush()
    db_session.add(
        OrderTracking(
            order_id=order.id,
            customer_id="user-1",
            status=TrackingStatus.READY_FOR_PICKUP,
            current_lat=0.0,
            current_lng=-179.999,
            delivery_lat=0.0,
            delivery_lng=179.0,
            delivery_address="Dateline",
            restaurant_lat=0.0,
            restaurant_lng=179.0,
            restaurant_address="Dateline Kitchen",
            estimated_delivery_time=now_utc(),
        )
    )
    db_session.commit()

    matches = find_nearby(db_session, 0.0, 179.999, max_distance_m=1000)

    assert len(matches) == 1
    assert matches[0].distance_m < 1000



def test_high_latitude_search_reaches_the_widest_point_of_the_circle(db_session):
    center_lat = 80.0
    angular = 573_000 / EARTH_RADIUS_M
    phi = math.radians(center_lat)
    edge_lat = math.degrees(math.asin(math.sin(phi) / math.cos(angular)))
    edge_lng = math.degrees(math.asin(math.sin(angular) / math.cos(phi)))
    order = Order(user_id="user-1")
    db_session.add(order)
    db_session.flush()
    db_session.add(
        OrderTracking(
            order_id=order.id,
            customer_id="user-1",
            status=TrackingStatus.OUT_FOR_DELIVERY,
            current_lat=edge_lat,
            current_lng=edge_lng,
            delivery_lat=edge_lat,
            delivery_lng=edge_lng,
            delivery_address="Longyearbyen",
            restaurant_lat=center_lat,
            restaurant_lng=0.0,
            restaurant_address="Arctic Kitchen",
            estimated_delivery_time=now_utc(),
        )
    )
    db_session.commit()

    matches = find_nearby(db_session, center_lat, 0.0, max_distance_m=574_000)

    assert len(matches) == 1
    assert matches[0].distance_m == pytest.approx(573_000, abs=1)


def test_circle_over_the_pole_scans_by_latitude_only(db_session):
    order = Order(user_id="user-1")
    db_session.add(order)
    db_session.flush()
    db_session.add(
        OrderTracking(
            order_id=order.id,
            customer_id="user-1",
            status=TrackingStatus.READY_FOR_PICKUP,
            current_lat=88.0,
            current_lng=180.0,
            delivery_lat=88.0,
            delivery_lng=180.0,
            delivery_address="Across the pole",
            restaurant_lat=88.0,
            restaurant_lng=0.0,
            restaurant_address="Polar Kitchen",
            estimated_delivery_time=now_utc(),
        )
    )
    db_session.commit()

    matches = find_nearby(db_session, 88.0, 0.0, max_distance_m=500_000)

    assert len(matches) == 1



@pytest.mark.parametrize(
    ("lat", "lng", "radius"),
    [(91.0, 0.0, 100), (0.0, -181.0, 100), (0.0, 0.0, -1)],
)
def test_rejects_out_of_range_queries(db_session, lat, lng, radius):
    with pytest.raises(ValidationError):
        find_nearby(db_session, lat, lng, max_distance_m=radius)
