#!/usr/bin/env python
import asyncio
import random
from datetime import timedelta

from faker import Faker

from leadcapture.db import Customer, Lead, Message, get_session, init_db, utcnow
from leadcapture.pricing import compute_estimate, resolve_pricing_rule

DEMO_API_KEY = "demo-widget-key"

PRICING_RULES = {
    "deck_staining": {"unit": "sq_ft", "min": 3, "max": 5, "base_fee": 100, "typical_units": 200},
    "fence_install": {"unit": "linear_ft", "min": 25, "max": 40, "base_fee": 150, "typical_units": 100},
    "gutter_cleaning": {"unit": "flat_rate", "min": 150, "max": 250},
    "handyman": {"unit": "hourly", "min": 60, "max": 90, "service_call_fee": 75, "typical_units": 3},
}


async def seed_customer(fake: Faker) -> Customer:
    async with get_session() as session:
        customer = Customer(
            company_name=f"{fake.last_name()} Outdoor Services",
            email=fake.company_email(),
            api_key=DEMO_API_KEY,
            timezone="America/Chicago",
            business_info={
                "services": list(PRICING_RULES),
                "service_area": f"{fake.city()} metro",
                "partner_referral_info": {
                    "partner_name": f"{fake.last_name()} Home Pros",
                    "partner_email": fake.company_email(),
                },
            },
            pricing_rules=PRICING_RULES,
            notification_email=fake.email(),
            notification_phone=fake.numerify("+1512#######"),
        )
        session.add(customer)
        await session.commit()
        await session.refresh(customer)
        return customer


async def seed_lead(fake: Faker, customer: Customer) -> None:
    service = random.choice(list(PRICING_RULES))
    rule = resolve_pricing_rule(customer.pricing_rules, service)
    quoted = random.random() < 0.5
    created = utcnow() - timedelta(days=random.randint(0, 6), hours=random.randint(0, 23))

    quote = None
    if quoted:
        estimate = compute_estimate(rule, rule.typical_units or 1.0, is_calculated=False)
        quote = {
            "estimated_range": estimate.estimated_range,
            "is_calculated": False,
            "unit": rule.unit,
            "unit_value": estimate.unit_value,
            "breakdown": estimate.breakdown(),
        }

    async with get_session() as session:
        lead = Lead(
            customer_id=customer.id,
            session_id=fake.uuid4(),
            visitor_name=fake.name(),
            visitor_phone=fake.numerify("+1512#######"),
            visitor_address=fake.street_address() if quoted else None,
            classification={
                "service_type": service,
                "category": "New Lead",
                "urgency": "medium",
                "urgency_score": round(random.uniform(0.2, 0.95), 2),
                "confidence": round(random.uniform(0.5, 0.95), 2),
                "is_out_of_area": False,
                "next_action": "generate_quote" if quoted else "ask_info",
            },
            quote=quote,
            status="qualified" if quoted else "new",
            is_qualified=quoted,
            is_complete=quoted,
            message_count=2,
            created_at=created,
            updated_at=created,
        )
        session.add(lead)
        await session.commit()
        await session.refresh(lead)

        session.add(
            Message(
                lead_id=lead.id,
                customer_id=customer.id,
                sender="visitor",
                content=fake.sentence(nb_words=12),
                created_at=created,
            )
        )
        session.add(
            Message(
                lead_id=lead.id,
                customer_id=customer.id,
                sender="assistant",
                content=fake.sentence(nb_words=16),
                model_tier="capable" if quoted else "fast",
                created_at=created,
            )
        )
        await session.commit()


async def main(total: int = 20) -> None:
    await init_db()
    fake = Faker()
    customer = await seed_customer(fake)
    for _ in range(total):
        await seed_lead(fake, customer)
    print(f"Seeded {total} demo leads for '{customer.company_name}' (widget key '{DEMO_API_KEY}').")


if __name__ == "__main__":
    asyncio.run(main())
