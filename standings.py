from leagues import fetch_members


def rank_members(members):
    """Order members by wins, then cumulative points, both descending.

    ``sorted`` is stable, so exact ties keep their input order.
    """
    return sorted(
        members,
        key=lambda member: (-member["wins"], -member["cumulative_points"]),
    )


def league_standings(db, league_id):
    """Ranked members of a league.

    Both the standings view and playoff seeding go through here so they can
    never disagree.
    """
    ranked = rank_members(fetch_members(db, league_id))
    return [dict(member, rank=idx) for idx, member in enumerate(ranked, start=1)]


def format_record(member):
    record = f"{member['wins']}-{member['losses']}"
    if member["ties"]:
        record += f"-{member['ties']}"
    return record
