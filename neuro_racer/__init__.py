"""
Neuro-Racer: evolving neural drivers on procedurally generated tracks

Small feedforward brains steer simulated vehicles around a closed track.
A genetic algorithm with elitism, crossover, mutation and adaptive
mutation-rate control breeds better drivers each generation.
"""

__version__ = "0.1.0"
