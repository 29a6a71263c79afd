"""
Tests for ray-fan perception and input normalization.
"""

import math

import numpy as np
import pytest

from neuro_racer.core.brain import Brain
from neuro_racer.core.perception import PerceptionModel, SensorConfig, SensorReading
from neuro_racer.core.vehicle import Vehicle
from neuro_racer.errors import ConfigurationError
from conftest import FakePhysicsWorld


def _wall_ahead(world, x=25.0):
    """Vertical wall crossing the +x axis at `x`."""
    return world.create_static_polyline(np.array([[x, -100.0], [x, 100.0]]))


class TestSensorConfig:
    """Tests for SensorConfig."""

    def test_defaults(self):
        config = SensorConfig()
        assert config.count == 9
        assert config.length == 50.0
        assert config.fov == pytest.approx(0.7 * math.pi)
        assert config.input_count == 11

    def test_validation(self):
        with pytest.raises(ConfigurationError):
            PerceptionModel(SensorConfig(count=0))
        with pytest.raises(ConfigurationError):
            PerceptionModel(SensorConfig(length=-1))


class TestRayFan:
    """Tests for ray layout."""

    def test_angles_span_field_of_view(self):
        model = PerceptionModel()
        angles = model.ray_angles(0.3)
        fov = model.config.fov
        assert len(angles) == 9
        assert angles[0] == pytest.approx(0.3 - fov / 2)
        assert angles[-1] == pytest.approx(0.3 + fov / 2)
        assert angles[4] == pytest.approx(0.3)

    def test_single_ray_points_forward(self):
        model = PerceptionModel(SensorConfig(count=1))
        assert model.ray_angles(1.2) == pytest.approx([1.2])


class TestSensing:
    """Tests for ray casting and normalization."""

    def test_clear_rays_read_zero(self):
        readings = PerceptionModel().sense(np.zeros(2), 0.0, FakePhysicsWorld())
        assert len(readings) == 9
        assert all(r.value == 0.0 and r.hit is None for r in readings)

    def test_hit_value_is_one_minus_fraction(self):
        """A wall halfway along the centre ray reads 0.5."""
        world = FakePhysicsWorld()
        _wall_ahead(world, 25.0)
        readings = PerceptionModel().sense(np.zeros(2), 0.0, world)

        centre = readings[4]
        assert centre.hit is not None
        assert centre.value == pytest.approx(0.5)
        assert np.allclose(centre.end, [25.0, 0.0])

    def test_values_stay_in_unit_range(self):
        world = FakePhysicsWorld()
        _wall_ahead(world, 5.0)
        for reading in PerceptionModel().sense(np.zeros(2), 0.0, world):
            assert 0.0 <= reading.value <= 1.0

    def test_closer_wall_reads_stronger(self):
        near, far = FakePhysicsWorld(), FakePhysicsWorld()
        _wall_ahead(near, 10.0)
        _wall_ahead(far, 40.0)
        model = PerceptionModel()
        assert model.sense(np.zeros(2), 0.0, near)[4].value > model.sense(np.zeros(2), 0.0, far)[4].value

    def test_excluded_colliders_are_ignored(self):
        world = FakePhysicsWorld()
        wall = _wall_ahead(world, 25.0)
        readings = PerceptionModel().sense(np.zeros(2), 0.0, world, exclude={wall})
        assert all(r.hit is None for r in readings)

    def test_clear_reading_end(self):
        reading = SensorReading(origin=np.zeros(2), direction=np.array([0.0, 50.0]))
        assert np.allclose(reading.end, [0.0, 50.0])


class TestInputVector:
    """Tests for the full brain input vector."""

    def test_layout_and_normalization(self):
        model = PerceptionModel()
        readings = model.sense(np.zeros(2), 0.0, FakePhysicsWorld())
        inputs = model.build_inputs(readings, speed=15.0, angular_velocity=5.0, max_speed=30.0)

        assert inputs.shape == (11,)
        assert inputs[9] == pytest.approx(0.5)
        assert inputs[10] == pytest.approx(math.tanh(1.0))

    def test_speed_is_capped(self):
        model = PerceptionModel()
        inputs = model.build_inputs([], speed=90.0, angular_velocity=-1000.0, max_speed=30.0)
        assert inputs[0] == 1.0
        assert -1.0 <= inputs[1] < 0.0

    def test_perceive_vehicle(self, rng):
        world = FakePhysicsWorld()
        _wall_ahead(world, 25.0)
        model = PerceptionModel()
        brain = Brain(model.input_count, [4], 3, rng=rng)
        vehicle = Vehicle.spawn(0, brain, world, np.zeros(2), 0.0)
        vehicle.velocity = np.array([3.0, 4.0])

        readings, inputs = model.perceive(vehicle, world, exclude={vehicle.handle})
        assert len(readings) == 9
        assert inputs[4] == pytest.approx(0.5)
        assert inputs[9] == pytest.approx(5.0 / 30.0)
        # Brain accepts the vector as-is
        assert vehicle.think(inputs).shape == (3,)
