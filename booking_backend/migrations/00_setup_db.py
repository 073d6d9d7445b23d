# booking_backend/migrations/00_setup_db.py
"""Create the schema and load reference data.

    python -m booking_backend.migrations.00_setup_db [--vehicles data/vehicles.csv]

Postal locations come from settings.DATA_POSTAL_PATH. Existing rows are left
untouched so the script can be re-run.
"""
import argparse

import pandas as pd
from sqlalchemy.orm import Session

from ..database import Base, SessionLocal, engine
from ..engine.data import load_postal_csv, normalize_postal_code
from ..models import PostalLocation, Vehicle
from ..schemas_extra import RadiusArea
from ..settings import settings


def seed_postal(db: Session, path: str) -> int:
    points, codes = load_postal_csv(path)
    added = 0
    for code in codes:
        if db.get(PostalLocation, code) is not None:
            continue
        p = points[code]
        db.add(
            PostalLocation(
                postal_code=p.postal_code,
                city=p.city,
                state=p.state,
                county=p.county,
                latitude=p.lat,
                longitude=p.lon,
            )
        )
        added += 1
    return added


def seed_vehicles(db: Session, path: str) -> int:
    df = pd.read_csv(path, dtype={"vehicle_id": str, "base_postal_code": str})
    required = {"vehicle_id", "name", "capacity_lbs"}
    missing = required - set(df.columns)
    if missing:
        raise ValueError(f"vehicles.csv missing columns: {missing}")

    added = 0
    for _, r in df.iterrows():
        vid = str(r["vehicle_id"]).strip()
        if db.get(Vehicle, vid) is not None:
            continue
        radius = r.get("max_radius_miles")
        base = r.get("base_postal_code")
        db.add(
            Vehicle(
                vehicle_id=vid,
                name=str(r["name"]).strip(),
                capacity_lbs=float(r["capacity_lbs"]),
                active=str(r.get("active", "true")).strip().lower() == "true",
                service_area=None
                if pd.isna(radius)
                else RadiusArea(max_radius_miles=float(radius)),
                base_postal_code=None if pd.isna(base) else normalize_postal_code(base),
                base_lat=None if pd.isna(r.get("base_lat")) else float(r["base_lat"]),
                base_lng=None if pd.isna(r.get("base_lng")) else float(r["base_lng"]),
                notes=None if pd.isna(r.get("notes")) else str(r["notes"]),
            )
        )
        added += 1
    return added


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(description="Create tables and seed reference data")
    parser.add_argument("--postal", default=settings.DATA_POSTAL_PATH)
    parser.add_argument("--vehicles", default=None, help="optional fleet CSV")
    args = parser.parse_args(argv)

    print(f"Creating tables on {engine.url.render_as_string(hide_password=True)}...")
    Base.metadata.create_all(engine)

    with SessionLocal() as db, db.begin():
        n = seed_postal(db, args.postal)
        print(f"Postal locations added: {n}")
        if args.vehicles:
            n = seed_vehicles(db, args.vehicles)
            print(f"Vehicles added: {n}")

    print("Setup complete!")


if __name__ == "__main__":
    main()
