"""
Inspection template seeded into every new trip.

The eleven pre-trip modules and their items are static configuration;
trip initialisation walks this table rather than building modules in code.
"""

from typing import NamedTuple, Tuple


class ItemTemplate(NamedTuple):
    label: str
    field_type: str
    critical: bool
    points: int


class ModuleTemplate(NamedTuple):
    key: str
    step: int
    name: str
    items: Tuple[ItemTemplate, ...]


I = ItemTemplate

CHECKLIST_MODULES: Tuple[ModuleTemplate, ...] = (
    ModuleTemplate("DRIVER_INFO", 1, "Driver & Trip Information", (
        I("Operator Name", "text", False, 0),
        I("Area of Operation", "text", False, 0),
        I("Driver Name", "text", True, 1),
        I("Driver ID", "text", True, 1),
        I("License Number", "text", True, 2),
        I("Vehicle ID / Plate", "text", True, 1),
        I("Vehicle Type", "select", False, 0),
        I("Date of Trip", "date", True, 1),
        I("Route", "text", True, 1),
        I("Driving Hours", "text", False, 0),
        I("Rest Breaks", "text", False, 0),
    )),
    ModuleTemplate("HEALTH_FITNESS", 2, "Health & Fitness", (
        I("Alcohol Breath Test/Drugs", "pass_fail_na", True, 5),
        I("Temperature Check", "pass_fail", True, 3),
        I("Vehicle Inspection Completed", "yes_no", True, 2),
        I("Driver Fit for Duty Declaration", "yes_no", True, 3),
        I("Medication", "yes_no", False, 1),
        I("No health issues that may impair driving", "yes_no", True, 3),
        I("Fatigue checklist completed", "yes_no", True, 3),
        I("Weather and road condition checked", "yes_no", False, 1),
    )),
    ModuleTemplate("DOCUMENTATION", 3, "Documentation & Compliance", (
        I("Certificate of fitness", "yes_no", True, 3),
        I("Road Tax (valid)", "yes_no", True, 2),
        I("Insurance", "yes_no", True, 3),
        I("Trip authorization form completed and signed", "yes_no", True, 2),
        I("Logbook", "yes_no", True, 1),
        I("Permits", "yes_no", True, 2),
        I("Emergency Contacts and risk mitigation plan communicated", "yes_no", True, 2),
        I("Personal Protective Equipment (PPE)", "yes_no", True, 2),
        I("Emergency Procedures", "yes_no", True, 2),
        I("GPS/Trip monitoring system activated", "yes_no", False, 1),
        I("Safety briefing provided", "yes_no", True, 2),
    )),
    ModuleTemplate("EXTERIOR_INSPECTION", 4, "Exterior Inspection", (
        I("Tires: Check for proper inflation, tread depth, and visible damage", "pass_fail", True, 3),
        I("Lights: Ensure headlights, taillights, brake lights, turn signals, and hazard lights are operational",
          "pass_fail", True, 4),
        I("Mirrors: Verify mirrors are clean, properly adjusted, and free of damage", "pass_fail", True, 2),
        I("Windshield: Check for cracks or chips; ensure wipers and washer fluid are functioning",
          "pass_fail", True, 3),
        I("Body Condition: Loose parts", "pass_fail", False, 1),
        I("Body Condition: Leaks", "pass_fail", True, 2),
    )),
    ModuleTemplate("ENGINE_FLUIDS", 5, "Engine & Fluids", (
        I("Engine Oil: Check oil level and quality", "pass_fail", True, 3),
        I("Coolant: Verify coolant levels and inspect for leaks", "pass_fail", True, 3),
        I("Brake Fluid: Ensure brake fluid is at the proper level", "pass_fail", True, 4),
        I("Transmission Fluid: Check level and condition", "pass_fail", True, 2),
        I("Power Steering Fluid: Ensure it is at the correct level", "pass_fail", True, 2),
        I("Battery: Inspect battery terminals and ensure the battery is secure", "pass_fail", True, 2),
    )),
    ModuleTemplate("INTERIOR_CABIN", 6, "Interior & Cabin", (
        I("Dashboard Indicators: Ensure all warning lights are functioning properly", "pass_fail", True, 2),
        I("Seatbelts: Verify seatbelts are operational and free from wear or damage", "pass_fail", True, 3),
        I("Horn: Test the horn to ensure it is working", "pass_fail", True, 2),
        I("Fire Extinguisher", "pass_fail", True, 3),
        I("First Aid Kit", "pass_fail", True, 2),
        I("Safety Triangles", "pass_fail", True, 2),
    )),
    ModuleTemplate("FUNCTIONAL_CHECKS", 7, "Functional Checks", (
        I("Brakes: Test brake function for responsiveness and effectiveness", "pass_fail", True, 5),
        I("Suspension: Check for any unusual noises or handling issues", "pass_fail", True, 2),
        I("Heating and Air Conditioning: Test to ensure both systems are operational", "pass_fail", False, 1),
    )),
    ModuleTemplate("SAFETY_EQUIPMENT", 8, "Safety Equipment", (
        I("Fire extinguisher (charged & tagged)", "pass_fail", True, 3),
        I("First aid kit (stock verified)", "pass_fail", True, 2),
        I("Reflective triangles (2)", "pass_fail", True, 2),
        I("Wheel chocks", "pass_fail", False, 1),
        I("Spare tyre and jack", "pass_fail", True, 2),
        I("Torch / flashlight", "pass_fail", False, 1),
        I("Emergency contact list", "pass_fail", False, 1),
        I("GPS tracker operational", "pass_fail", False, 1),
    )),
    ModuleTemplate("FINAL_VERIFICATION", 9, "Final Verification", (
        I("All critical defects rectified before departure?", "yes_no", True, 5),
        I("Driver briefed on trip hazards and route plan?", "yes_no", True, 3),
        I("Vehicle safe and ready for dispatch?", "yes_no", True, 5),
    )),
    ModuleTemplate("RISK_SCORING", 10, "Risk Scoring", (
        I("Speeding in School Zone", "number", True, 5),
        I("Speeding on Hazardous Bridge", "number", True, 3),
        I("Other Violations", "number", False, 0),
    )),
    ModuleTemplate("SIGN_OFF", 11, "Final Sign-Off", (
        I("Driver Signature", "signature", True, 0),
        I("Supervisor Signature", "signature", True, 0),
        I("Mechanic Signature (if repairs done)", "signature", False, 0),
    )),
)

REQUIRED_STEPS = frozenset(m.step for m in CHECKLIST_MODULES)

# Per-module weighting used by the multi-phase risk breakdown
MODULE_RISK_MULTIPLIERS = {
    "DRIVER_INFO": 0.8,
    "HEALTH_FITNESS": 1.5,
    "DOCUMENTATION": 1.2,
    "EXTERIOR_INSPECTION": 1.8,
    "ENGINE_FLUIDS": 1.6,
    "INTERIOR_CABIN": 1.4,
    "FUNCTIONAL_CHECKS": 2.0,
    "SAFETY_EQUIPMENT": 1.7,
    "FINAL_VERIFICATION": 1.3,
    "RISK_SCORING": 0.0,
    "SIGN_OFF": 0.5,
}

CRITICAL_ITEM_WEIGHTS = {
    "Alcohol Breath Test/Drugs": 5.0,
    "Temperature Check": 3.0,
    "Brakes: Test brake function for responsiveness and effectiveness": 5.0,
    "Tires: Check for proper inflation, tread depth, and visible damage": 4.0,
    "Lights: Ensure headlights, taillights, brake lights, turn signals, and hazard lights are operational": 4.0,
    "All critical defects rectified before departure?": 5.0,
    "Vehicle safe and ready for dispatch?": 5.0,
}


def module_key_for_name(name: str):
    for module in CHECKLIST_MODULES:
        if module.name == name:
            return module.key
    return None
