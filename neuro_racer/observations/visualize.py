"""
observations/visualize.py

Offline pictures of a run: the track, where the population is, and how
fitness moved across generations.

Nothing here feeds back into the simulation.
"""

from __future__ import annotations
from typing import Optional, List, Sequence, TYPE_CHECKING
import numpy as np

if TYPE_CHECKING:
    from neuro_racer.core.vehicle import Vehicle
    from neuro_racer.environments.track import Track
    from neuro_racer.evolution.engine import GenerationSummary


class RaceVisualizer:
    """
    Two panels: the track with vehicles on the left, fitness history on
    the right.
    """

    def __init__(self, track: Track, figsize: tuple = (14, 6)):
        self.track = track
        self.figsize = figsize

        # Lazy import matplotlib
        self._plt = None
        self._fig = None
        self._track_ax = None
        self._history_ax = None

    def _setup_plot(self):
        import matplotlib.pyplot as plt
        self._plt = plt

        self._fig, (self._track_ax, self._history_ax) = plt.subplots(
            1, 2, figsize=self.figsize
        )
        self._fig.patch.set_facecolor('#16213e')

    def render(
        self,
        vehicles: Sequence[Vehicle] = (),
        history: Sequence[GenerationSummary] = (),
        show_sensors: bool = True,
    ) -> None:
        if self._plt is None:
            self._setup_plot()
        self._render_track(vehicles, show_sensors)
        self._render_history(history)
        self._fig.tight_layout()

    def _render_track(self, vehicles: Sequence[Vehicle], show_sensors: bool) -> None:
        ax = self._track_ax
        ax.clear()
        ax.set_facecolor('#1a1a2e')
        ax.set_aspect('equal')

        path = self.track.path
        if len(path):
            loop = np.vstack([path, path[:1]])
            ax.plot(loop[:, 0], loop[:, 1], color='#555577', linestyle='--', linewidth=1)
        for boundary in (self.track.inner_loop, self.track.outer_loop):
            if len(boundary):
                ax.plot(boundary[:, 0], boundary[:, 1], color='white', linewidth=1.5)

        start = self.track.start_position
        ax.scatter([start[0]], [start[1]], marker='s', color='#06d6a0', s=40, zorder=3)

        alive = [v for v in vehicles if v.alive]
        dead = [v for v in vehicles if not v.alive]
        if dead:
            pos = np.array([v.position for v in dead])
            ax.scatter(pos[:, 0], pos[:, 1], color='#6c757d', s=12, alpha=0.5)
        if alive:
            pos = np.array([v.position for v in alive])
            fitness = np.array([v.fitness for v in alive])
            ax.scatter(
                pos[:, 0], pos[:, 1],
                c=fitness, cmap='viridis', s=25, edgecolors='white', linewidths=0.5, zorder=4
            )

            if show_sensors:
                leader = alive[int(np.argmax(fitness))]
                for reading in leader.sensors:
                    end = reading.end
                    ax.plot(
                        [reading.origin[0], end[0]], [reading.origin[1], end[1]],
                        color='#f72585' if reading.hit is not None else '#4cc9f0',
                        alpha=0.7, linewidth=0.8
                    )

        ax.set_title(
            f"Alive: {len(alive)} / {len(vehicles)}", color='white', fontsize=12
        )

    def _render_history(self, history: Sequence[GenerationSummary]) -> None:
        ax = self._history_ax
        ax.clear()
        ax.set_facecolor('#1a1a2e')
        if not history:
            ax.set_title("No generations yet", color='white', fontsize=12)
            return

        generations = [h.generation for h in history]
        ax.plot(generations, [h.best_fitness for h in history], color='#f72585', label='best')
        ax.plot(generations, [h.avg_top10_fitness for h in history], color='#4cc9f0', label='top 10')
        ax.plot(generations, [h.avg_fitness for h in history], color='#06d6a0', label='mean')
        ax.set_xlabel("generation", color='white')
        ax.set_ylabel("fitness", color='white')
        ax.tick_params(colors='white')
        ax.legend(loc='upper left')
        ax.set_title(
            f"Generation {generations[-1]} | Best {history[-1].best_fitness:.1f}",
            color='white', fontsize=12
        )

    def save_frame(self, path: str) -> None:
        if self._fig is not None:
            self._fig.savefig(path, dpi=150, facecolor=self._fig.get_facecolor())

    def close(self) -> None:
        if self._plt is not None:
            self._plt.close(self._fig)


def plot_run(
    track: Track,
    history: List[GenerationSummary],
    path: str,
    vehicles: Optional[Sequence[Vehicle]] = None,
) -> None:
    """Render a single picture of a finished run to `path`."""
    import matplotlib
    matplotlib.use("Agg")

    viz = RaceVisualizer(track)
    try:
        viz.render(vehicles or (), history)
        viz.save_frame(path)
    finally:
        viz.close()
