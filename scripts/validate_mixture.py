#!/usr/bin/env python3
"""
Mixture Calculator Validation Script
Runs randomized fertilizer selections over the built-in catalog and checks
the solver invariants on every solved scenario.
"""
import sys
import os
import random
import json
from typing import Dict, Any

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from fertimix.schemas.mixture_schemas import MixtureRequest
from fertimix.services.mixture_calculator import MixtureCalculator
from fertimix.services.mixture_query import ElemName
from fertimix.services.mixture_rules import P_NEIGHBOR

TOLERANCE = 1e-7

RATIO_PRESETS = [
    {"name": "Default", "n": (1.75, 1.85), "k": (1.75, 1.85), "mg": (0.25, 0.45)},
    {"name": "Wide", "n": (1.0, 3.0), "k": (1.0, 3.0), "mg": (0.1, 1.0)},
    {"name": "Potassium heavy", "n": (1.0, 1.5), "k": (2.5, 3.0), "mg": (0.3, 0.5)},
    {"name": "Nitrogen heavy", "n": (2.5, 3.5), "k": (1.0, 1.5), "mg": (0.2, 0.4)},
]

MASSES = [1.0, 5.0, 10.0, 25.0, 50.0]


def check_solution(calc) -> list:
    """Invariant violations of a solved calculation."""
    issues = []
    query = calc.query
    params = calc.solution.params

    if any(x < -TOLERANCE for x in params):
        issues.append("negative fertilizer amount")

    if abs(sum(params) - calc.solution.function_value) > TOLERANCE:
        issues.append("objective differs from the sum of amounts")

    def supplied(elem):
        return sum(f[elem] / 100.0 * x for f, x in zip(query.fertilizers, params))

    p = supplied(ElemName.PHOSPHORUS)
    if abs(p - 1.0) > P_NEIGHBOR + TOLERANCE:
        issues.append(f"phosphorus not pinned: {p:.9f}")

    for elem, window in [
        (ElemName.NITROGEN, query.n_ratio),
        (ElemName.POTASSIUM, query.k_ratio),
        (ElemName.MAGNESIUM, query.mg_ratio),
    ]:
        total = supplied(elem)
        if not window.low - TOLERANCE <= total <= window.high + TOLERANCE:
            issues.append(f"{elem.name} ratio {total:.6f} outside [{window.low}, {window.high}]")

    total = calc.solution.function_value
    for fert, x in zip(query.fertilizers, params):
        if fert.limit is not None and x > fert.limit / query.mass * total + TOLERANCE:
            issues.append(f"{fert.name} exceeds its limit")

    if calc.deficites.any():
        issues.append("solved mixture reported deficits")
    return issues


def run_validation(num_tests: int = 100, seed: int = 42) -> Dict[str, Any]:
    random.seed(seed)
    calculator = MixtureCalculator()
    catalog_ids = [f.id for f in calculator.catalog.permanent]

    results = []
    anomalies = []
    stats = {
        "total_tests": num_tests,
        "solved": 0,
        "unsatisfiable": 0,
        "failed": 0,
        "anomalies": 0,
        "error_kinds": {},
        "deficits_found": {"N": 0, "P": 0, "K": 0, "Mg": 0},
        "unexplained": 0,
    }

    for i in range(num_tests):
        try:
            preset = random.choice(RATIO_PRESETS)
            mass = random.choice(MASSES)
            count = random.randint(3, 7)
            selection = []
            for fert_id in random.sample(catalog_ids, count):
                limit = round(random.uniform(0.5, mass), 2) if random.random() < 0.2 else None
                selection.append({"id": fert_id, "limit": limit})

            request = MixtureRequest(
                permanent=selection,
                n_ratio={"from": preset["n"][0], "to": preset["n"][1]},
                k_ratio={"from": preset["k"][0], "to": preset["k"][1]},
                mg_ratio={"from": preset["mg"][0], "to": preset["mg"][1]},
                mass=mass,
            )
            calc = calculator.calculate(request)

            test_result = {
                "test_id": i + 1,
                "preset": preset["name"],
                "mass": mass,
                "fertilizers": [s["id"] for s in selection],
                "limits": sum(1 for s in selection if s["limit"] is not None),
                "solved": calc.solved,
            }

            if calc.solved:
                stats["solved"] += 1
                test_result["function_value"] = round(calc.solution.function_value, 6)
                for issue in check_solution(calc):
                    anomalies.append({"test_id": i + 1, "issue": issue, "preset": preset["name"]})
            else:
                stats["unsatisfiable"] += 1
                kinds = stats["error_kinds"]
                kinds[calc.error_kind] = kinds.get(calc.error_kind, 0) + 1
                test_result["error_kind"] = calc.error_kind
                flags = {"N": calc.deficites.n, "P": calc.deficites.p, "K": calc.deficites.k, "Mg": calc.deficites.mg}
                for nutrient, lacking in flags.items():
                    if lacking:
                        stats["deficits_found"][nutrient] += 1
                test_result["deficites"] = [n for n, lacking in flags.items() if lacking]
                if not calc.deficites.any():
                    stats["unexplained"] += 1

            results.append(test_result)

        except Exception as e:
            stats["failed"] += 1
            anomalies.append({
                "test_id": i + 1,
                "issue": "Calculation error",
                "error": str(e),
            })

    stats["anomalies"] = len(anomalies)

    return {
        "stats": stats,
        "results": results,
        "anomalies": anomalies,
    }


def generate_report(validation: Dict) -> str:
    stats = validation["stats"]
    anomalies = validation["anomalies"]

    report = []
    report.append("=" * 80)
    report.append("VALIDATION REPORT - MIXTURE CALCULATOR")
    report.append("=" * 80)
    report.append("")

    report.append("## SUMMARY")
    report.append("-" * 40)
    report.append(f"Total scenarios: {stats['total_tests']}")
    report.append(f"Solved: {stats['solved']}")
    report.append(f"Unsatisfiable: {stats['unsatisfiable']}")
    report.append(f"Errors: {stats['failed']}")
    report.append(f"Invariant violations: {stats['anomalies']}")
    report.append("")

    report.append("## UNSATISFIABLE SCENARIOS")
    report.append("-" * 40)
    for kind, count in sorted(stats["error_kinds"].items()):
        report.append(f"{kind:<20} {count:>5}")
    for nutrient, count in stats["deficits_found"].items():
        report.append(f"{nutrient} deficient: {count}")
    report.append(f"Without any reported deficit: {stats['unexplained']}")
    report.append("")

    if anomalies:
        report.append("## ANOMALIES")
        report.append("-" * 40)
        for i, anom in enumerate(anomalies[:15]):
            report.append(f"{i+1}. Test #{anom.get('test_id', '?')}: {anom.get('issue', 'Unknown')}")
            for k, v in anom.items():
                if k not in ["test_id", "issue"]:
                    report.append(f"   - {k}: {v}")
        if len(anomalies) > 15:
            report.append(f"   ... and {len(anomalies) - 15} more")
        report.append("")

    report.append("## CONCLUSIONS")
    report.append("-" * 40)
    if stats["failed"] == 0:
        report.append("✓ Every scenario completed without unexpected errors.")
    else:
        report.append(f"⚠️ {stats['failed']} scenarios raised errors.")
    if stats["anomalies"] == 0:
        report.append("✓ All solved mixtures satisfy the ratio windows and limits.")
    else:
        report.append(f"⚠️ {stats['anomalies']} invariant violations.")
    if stats["unexplained"]:
        report.append(f"⚠️ {stats['unexplained']} unsatisfiable scenarios without a reported deficit.")

    report.append("")
    report.append("=" * 80)

    return "\n".join(report)


if __name__ == "__main__":
    print("Running mixture validation (100 scenarios)...")
    print("")

    validation = run_validation(num_tests=100, seed=42)

    report = generate_report(validation)
    print(report)

    with open("mixture_validation_data.json", "w", encoding="utf-8") as f:
        json.dump(validation, f, indent=2, ensure_ascii=False)

    print("\nGenerated: mixture_validation_data.json")
