#!/usr/bin/env python3
"""
EvacFlow - Capacity-aware Evacuation Flow Assignment
====================================================

Assigns evacuees to shelters and paths over a road network, keeping shelters
within capacity and steering flow away from congested roads.

Usage:
    python main.py                      # Run the synthetic demo
    python main.py --network city.json  # Assign the requests of a scenario file
    python main.py --test               # Run the test suite
    python main.py --check              # Check dependencies

Requirements:
    - Python 3.10+
    - networkx, numpy, scipy
    - python-json-logger

Version: 1.0.0
"""

import sys
import argparse


def print_summary(engine, result) -> None:
    """Print the outcome of one batch and the state of every shelter."""
    metrics = result.metrics
    print(f"\nBatch (epoch {result.epoch}):")
    print(f"  Assignments: {len(result.assignments)}")
    print(f"  Degraded:    {len(result.degraded)}")
    print(f"  Unplaced:    {len(result.failures)}")
    print(f"  Zones:       {metrics.zones}")
    print(f"  Time:        {metrics.execution_time_seconds * 1000:.1f} ms")

    print("\nShelters:")
    stats = engine.get_stats()
    for destination_id, info in stats['destinations'].items():
        print(f"  {destination_id:20} {info['occupancy']:5d}/{info['max_capacity']:<5d} "
              f"[{info['status']}]")


def run_demo(network_file=None, request_count=250, config_file=None) -> None:
    """
    Run one assignment batch, a congestion spike and a closure.

    Uses the built-in grid city unless a scenario file is given.
    """
    from evacflow.config import EngineConfig
    from evacflow.control import EvacuationEngine, ResourceClosure, ResourceType
    from evacflow.data import demo_scenario, generate_requests, load_scenario

    print("EvacFlow - Demo")
    print("=" * 50)

    if network_file:
        scenario = load_scenario(network_file)
        if not scenario.requests:
            scenario.requests = generate_requests(request_count, scenario.graph)
    else:
        scenario = demo_scenario(request_count)

    config = EngineConfig.load_from_file(config_file) if config_file else EngineConfig()

    stats = scenario.graph.get_stats()
    print(f"\nNetwork '{scenario.name}':")
    print(f"  Nodes:      {stats.total_nodes}")
    print(f"  Edges:      {stats.total_edges}")
    print(f"  Shelters:   {stats.destinations}")
    print(f"  Capacity:   {stats.total_destination_capacity:,}")
    print(f"  Components: {stats.connected_components}")
    print(f"  Requests:   {len(scenario.requests):,}")

    engine = EvacuationEngine(scenario.graph, config)
    engine.start_event(scenario.name)

    result = engine.assign_batch(scenario.requests)
    print_summary(engine, result)

    # Congest the busiest road and let the controller react
    loads = engine.store.edge_loads()
    if loads:
        busiest = max(sorted(loads), key=lambda e: loads[e])
        capacity = scenario.graph.get_edge(busiest).expected_capacity_per_hour
        engine.record_edge_flow(busiest, capacity)
        updates = engine.recalculate_routes()
        print(f"\nCongestion on edge {busiest}: {len(updates)} assignments rerouted")

    # Close the fullest shelter
    destinations = engine.get_stats()['destinations']
    if destinations:
        fullest = max(sorted(destinations), key=lambda d: destinations[d]['occupancy'])
        updates = engine.apply_closure(ResourceClosure(ResourceType.DESTINATION, fullest,
                                                       reason="demo closure"))
        print(f"Closure of {fullest}: {len(updates)} assignments rerouted")

    risks = engine.predict_bottlenecks(900)
    print(f"\nBottleneck risks (15 min): {len(risks)}")
    for prediction in engine.predict_destination_fill()[:3]:
        eta = (f"{prediction.seconds_to_full / 60:.1f} min"
               if prediction.seconds_to_full is not None else "-")
        print(f"  {prediction.destination_id:20} fills in {eta}")

    archived = engine.end_event()
    print(f"\nEvent ended, {archived} assignments archived")


def run_tests():
    """Run the pytest suite under tests/."""
    print("Running tests...")

    import subprocess
    result = subprocess.run(
        [sys.executable, "-m", "pytest", "tests/", "-v", "--tb=short"],
        cwd=sys.path[0] or "."
    )
    sys.exit(result.returncode)


def check_dependencies():
    """Report which required libraries are installed."""
    print("Dependency check")
    print("=" * 50)

    dependencies = [
        ("networkx", "networkx"),
        ("numpy", "numpy"),
        ("scipy", "scipy"),
        ("python-json-logger", "pythonjsonlogger"),
        ("pytest", "pytest"),
    ]

    all_ok = True
    for name, package in dependencies:
        try:
            __import__(package)
            status = "OK"
        except ImportError:
            status = "MISSING"
            all_ok = False

        print(f"  {name:20} [{status}]")

    print()
    if all_ok:
        print("All dependencies are installed.")
    else:
        print("Some dependencies are missing. Run:")
        print("  pip install -e .[test]")

    return all_ok


def main():
    """Parse arguments and dispatch to the chosen mode."""
    parser = argparse.ArgumentParser(
        description="EvacFlow - Capacity-aware Evacuation Flow Assignment",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py                          # Synthetic demo
  python main.py --network city.json      # Scenario file
  python main.py --requests 2000          # Larger demo batch
  python main.py --test                   # Run tests
        """
    )

    parser.add_argument(
        "--demo", action="store_true",
        help="Run the synthetic demo (default)"
    )
    parser.add_argument(
        "--network", metavar="FILE",
        help="Scenario/network JSON file"
    )
    parser.add_argument(
        "--requests", type=int, default=250,
        help="Number of generated requests when the scenario has none"
    )
    parser.add_argument(
        "--config", metavar="FILE",
        help="Engine configuration JSON file"
    )
    parser.add_argument(
        "--test", action="store_true",
        help="Run tests"
    )
    parser.add_argument(
        "--check", action="store_true",
        help="Check dependencies"
    )

    args = parser.parse_args()

    if args.check:
        sys.exit(0 if check_dependencies() else 1)
    elif args.test:
        run_tests()
    else:
        run_demo(args.network, args.requests, args.config)


if __name__ == "__main__":
    main()
