"""
Synthetic anomaly data generator.
Creates anomalies with plausible locations, observations and corroborating
per-source judgments.
"""

import random
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from faker import Faker

from anomaly_flow.db.models import Anomaly, SignalData
from anomaly_flow.schemas import AnomalyStatus, Severity, severity_for_confidence

fake = Faker()
Faker.seed(42)  # Consistent seed for reproducibility


# Anomaly categories with the sources that usually report them
ANOMALY_CATEGORIES = {
    "Unusual Seismic Activity Pattern": ["usgs", "sensor-network"],
    "Atmospheric Pressure Anomaly": ["openweather", "weatherbit"],
    "Electromagnetic Interference Spike": ["em-sensors", "telecom-data"],
    "Unusual Marine Activity": ["sonar-network", "maritime-data"],
    "Radiation Level Fluctuation": ["radiation-monitors", "environmental-data"],
    "Cyber Infrastructure Anomaly": ["network-monitors", "security-feeds"],
    "Volcanic Activity Increase": ["usgs", "volcanic-monitors"],
    "Flash Flood Warning Signal": ["openweather", "river-gauges"],
}

OBSERVATION_TEMPLATES = [
    "Sensors near {city} recorded readings {factor}x above the seasonal baseline.",
    "Multiple reports from {city} describe an emergency situation developing quickly.",
    "Routine monitoring around {city} shows a minor deviation within expected range.",
    "Operators in {city} flagged a sudden spike followed by an unexplained drop.",
]


def _judgment(source: str, is_anomaly: bool) -> dict:
    confidence = round(random.uniform(0.6, 0.95) if is_anomaly else random.uniform(0.2, 0.5), 2)
    return {
        "is_anomaly": is_anomaly,
        "severity": severity_for_confidence(confidence, is_anomaly).value,
        "confidence": confidence,
        "reasoning": f"{source} {'detected' if is_anomaly else 'did not detect'} an anomaly",
        "provider": source,
    }


def generate_anomalies(count: int = 25) -> tuple[list[Anomaly], list[SignalData]]:
    """
    Generate synthetic anomalies and their source signals.

    Roughly two thirds of the anomalies have sources that agree on a real
    anomaly; the rest have mostly negative or split signals.

    Args:
        count: Number of anomalies to generate

    Returns:
        Tuple of (anomalies, signals)
    """
    anomalies = []
    signals = []

    for i in range(count):
        title, sources = random.choice(list(ANOMALY_CATEGORIES.items()))
        city = fake.city()
        text = random.choice(OBSERVATION_TEMPLATES).format(
            city=city, factor=random.randint(2, 12)
        )

        # Random detection time within the last 30 days
        timestamp = datetime.now(timezone.utc) - timedelta(minutes=random.randint(0, 30 * 24 * 60))

        anomaly = Anomaly(
            id=uuid4(),
            title=title,
            description=text,
            severity=random.choice(list(Severity)),
            confidence=0.0,
            status=AnomalyStatus.DETECTED,
            location={
                "lat": float(fake.latitude()),
                "lng": float(fake.longitude()),
                "address": city,
            },
            modalities={"text": text},
            source_apis=list(sources),
            timestamp=timestamp,
        )
        anomalies.append(anomaly)

        genuine = random.random() < 0.66
        for source in sources:
            is_anomaly = genuine or random.random() < 0.3
            signals.append(
                SignalData(
                    id=uuid4(),
                    anomaly_id=anomaly.id,
                    source_api=source,
                    judgment=_judgment(source, is_anomaly),
                    raw_data={"reading": round(random.uniform(0, 100), 2), "city": city},
                    collected_at=timestamp + timedelta(seconds=random.randint(1, 600)),
                )
            )

    return anomalies, signals
