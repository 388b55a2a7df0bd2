from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, JSON, PrimaryKeyConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from .db import Base


class Brewery(Base):
    __tablename__ = 'breweries'
    id = Column(String(128), primary_key=True, index=True)
    name = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    blocks = relationship('LedgerBlock', back_populates='brewery', order_by='LedgerBlock.index')


class LedgerBlock(Base):
    __tablename__ = 'ledger_blocks'
    brewery_id = Column(String(128), ForeignKey('breweries.id', ondelete='CASCADE'), nullable=False, index=True)
    index = Column('index_num', Integer, nullable=False)
    timestamp = Column(String(64), nullable=False)  # ISO-8601 string exactly as hashed
    data = Column(JSON, nullable=False)  # {action, details, user}
    previous_hash = Column(String(64), nullable=False)
    hash = Column(String(64), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    brewery = relationship('Brewery', back_populates='blocks')

    # rejects the loser of two appends racing off the same tail
    __table_args__ = (PrimaryKeyConstraint('brewery_id', 'index_num', name='pk_ledger_blocks'),)
